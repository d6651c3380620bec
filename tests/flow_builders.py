"""Builders for flow template documents used across the chatbot tests."""


def node(node_id, node_type, **data):
    """Builder-style node document."""
    return {"id": node_id, "type": node_type, "position": {"x": 0, "y": 0}, "data": data}


def edge(source, target, handle=None):
    document = {"id": f"{source}-{target}", "source": source, "target": target}
    if handle:
        document["sourceHandle"] = handle
    return document


def chain(*node_ids):
    """Edges linking ``node_ids`` in order through the default handle."""
    return [edge(a, b) for a, b in zip(node_ids, node_ids[1:])]
