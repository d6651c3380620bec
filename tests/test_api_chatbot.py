"""Tests for the chatbot API: message routing, sessions, templates and activations."""

import pytest

from chatbot.conversation.flow_engine import NO_ACTIVE_FLOW_MESSAGE
from chatbot.conversation.flow_graph import FlowLoader

from app.api.v1.chatbot import (
    DEFAULT_GREETING,
    GENERIC_REPLY,
    find_welcome_node,
    is_new_conversation,
)

from tests.flow_builders import node, chain

CHATBOT_URL = "/api/v1/chatbot"

TEMPLATE_DOCUMENT = {
    "name": "Bienvenida web",
    "status": "published",
    "nodes": [
        node("start", "start"),
        node("hello", "message", message="Hola, gracias por escribir"),
        node("bye", "end"),
    ],
    "edges": chain("start", "hello", "bye"),
}


class TestIntegratedMessage:
    """Test conversation turns through the HTTP surface."""

    def test_conversation_over_two_turns(self, client, tenant_headers, greeting_flow):
        first = client.post(f"{CHATBOT_URL}/integrated-message", json={
            "text": "hola", "user_id": "web-123", "user_name": "Lucía",
        }, headers=tenant_headers)

        assert first.status_code == 200
        data = first.json()["data"]
        assert data["messages"] == ["¡Hola Lucía! Bienvenido a nuestra empresa", "¿Cómo te llamas?"]
        assert data["status"] == "waiting_input"
        assert data["user_id"] == "web-123"

        second = client.post(f"{CHATBOT_URL}/integrated-message", json={
            "text": "Lucía", "session_id": data["session_id"],
        }, headers=tenant_headers).json()["data"]

        assert second["session_id"] == data["session_id"]
        assert second["user_id"] == "web-123"
        assert second["status"] == "completed"
        assert second["message"] == "Gracias Lucía, te escribimos pronto."

    def test_generates_user_id(self, client, tenant_headers, greeting_flow):
        data = client.post(
            f"{CHATBOT_URL}/integrated-message", json={"text": "hola"}, headers=tenant_headers
        ).json()["data"]

        assert data["user_id"].startswith("user-")

    def test_without_active_flow(self, client, tenant_headers):
        data = client.post(
            f"{CHATBOT_URL}/integrated-message", json={"text": "hola", "user_id": "u-1"}, headers=tenant_headers
        ).json()["data"]

        assert data["status"] == "no_active_flow"
        assert data["messages"] == [NO_ACTIVE_FLOW_MESSAGE]

    def test_empty_text_rejected(self, client, tenant_headers):
        response = client.post(f"{CHATBOT_URL}/integrated-message", json={"text": ""}, headers=tenant_headers)

        assert response.status_code == 422


class TestSimpleMessage:

    @pytest.mark.parametrize("session_id,expected", [
        (None, True),
        ("new_1712", True),
        ("abc123", True),
        ("0b6c1f2e-9d7a-4c59-8d0e-3f2a1b4c5d6e", False),
    ])
    def test_is_new_conversation(self, session_id, expected):
        assert is_new_conversation(session_id) is expected

    def test_find_welcome_node_falls_back_to_first_message(self):
        flow = FlowLoader.load_flow_from_dict(TEMPLATE_DOCUMENT)

        assert find_welcome_node(flow).id == "hello"

    def test_new_conversation_gets_welcome(self, client, tenant_headers, greeting_flow):
        data = client.post(f"{CHATBOT_URL}/simple-message", json={"text": "hola"}, headers=tenant_headers).json()["data"]

        assert data["messages"] == ["¡Hola Usuario! Bienvenido a nuestra empresa"]
        assert data["metadata"]["is_new_conversation"] is True
        assert data["metadata"]["template_id"] == greeting_flow.id

    def test_ongoing_conversation_gets_first_question(self, client, tenant_headers, greeting_flow):
        data = client.post(f"{CHATBOT_URL}/simple-message", json={
            "text": "quiero una cita", "session_id": "0b6c1f2e-9d7a-4c59-8d0e-3f2a1b4c5d6e",
        }, headers=tenant_headers).json()["data"]

        assert data["response"] == "¿Cómo te llamas?"

    def test_without_template(self, client, tenant_headers):
        new = client.post(f"{CHATBOT_URL}/simple-message", json={"text": "hola"}, headers=tenant_headers)
        ongoing = client.post(f"{CHATBOT_URL}/simple-message", json={
            "text": "precio", "session_id": "0b6c1f2e-9d7a-4c59-8d0e-3f2a1b4c5d6e",
        }, headers=tenant_headers)

        assert new.json()["data"]["response"] == DEFAULT_GREETING
        assert ongoing.json()["data"]["response"] == GENERIC_REPLY


class TestSessions:

    def _start(self, client, headers):
        return client.post(
            f"{CHATBOT_URL}/integrated-message", json={"text": "hola", "user_id": "u-9"}, headers=headers
        ).json()["data"]["session_id"]

    def test_session_status(self, client, tenant_headers, greeting_flow):
        session_id = self._start(client, tenant_headers)

        data = client.get(f"{CHATBOT_URL}/sessions/{session_id}", headers=tenant_headers).json()["data"]

        assert data["current_node"] == "ask_name"
        assert data["waiting_for"] == {"node_id": "ask_name", "type": "input"}
        assert [m["role"] for m in data["messages"]] == ["user", "bot", "bot"]

    def test_end_session(self, client, tenant_headers, greeting_flow):
        session_id = self._start(client, tenant_headers)

        response = client.post(
            f"{CHATBOT_URL}/sessions/{session_id}/end", json={"status": "transferred"}, headers=tenant_headers
        )
        statistics = client.get(f"{CHATBOT_URL}/statistics", headers=tenant_headers).json()["data"]

        assert response.json()["data"] == {"session_id": session_id, "status": "transferred"}
        assert statistics["total_sessions"] == 1
        assert statistics["by_status"] == {"transferred": 1}

    def test_unknown_session(self, client, tenant_headers):
        assert client.get(f"{CHATBOT_URL}/sessions/missing", headers=tenant_headers).status_code == 404


class TestTemplatesAndActivations:
    """Test template documents and per-channel activation."""

    def _create(self, client, headers, document=TEMPLATE_DOCUMENT):
        return client.post(f"{CHATBOT_URL}/templates", json=document, headers=headers)

    def test_create_and_get(self, client, tenant_headers):
        created = self._create(client, tenant_headers)

        assert created.status_code == 201
        template = created.json()["data"]
        assert template["version"] == 1
        fetched = client.get(f"{CHATBOT_URL}/templates/{template['id']}", headers=tenant_headers).json()["data"]
        assert [n["id"] for n in fetched["nodes"]] == ["start", "hello", "bye"]

    def test_invalid_flow(self, client, tenant_headers):
        document = {**TEMPLATE_DOCUMENT, "edges": chain("start", "ghost")}

        response = self._create(client, tenant_headers, document)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_flow"

    def test_replace_bumps_version(self, client, tenant_headers, mock_redis):
        template_id = self._create(client, tenant_headers).json()["data"]["id"]

        response = client.put(
            f"{CHATBOT_URL}/templates/{template_id}", json={**TEMPLATE_DOCUMENT, "name": "Bienvenida v2"},
            headers=tenant_headers,
        )

        data = response.json()["data"]
        assert data["name"] == "Bienvenida v2"
        assert data["version"] == 2
        mock_redis.delete.assert_called()

    def test_list_and_archive(self, client, tenant_headers):
        template_id = self._create(client, tenant_headers).json()["data"]["id"]

        archived = client.delete(f"{CHATBOT_URL}/templates/{template_id}", headers=tenant_headers)
        listed = client.get(f"{CHATBOT_URL}/templates", params={"status": "archived"}, headers=tenant_headers)

        assert archived.json()["data"] == {"id": template_id, "status": "archived"}
        assert [t["id"] for t in listed.json()["data"]] == [template_id]

    def test_unknown_template(self, client, tenant_headers):
        response = client.get(f"{CHATBOT_URL}/templates/missing", headers=tenant_headers)

        assert response.status_code == 404

    def test_invalidate_cache(self, client, tenant_headers):
        template_id = self._create(client, tenant_headers).json()["data"]["id"]

        data = client.post(
            f"{CHATBOT_URL}/templates/{template_id}/invalidate-cache", headers=tenant_headers
        ).json()["data"]

        assert data == {"template_id": template_id, "invalidated": 1}

    def test_activate_and_chat(self, client, tenant_headers):
        template_id = self._create(client, tenant_headers).json()["data"]["id"]

        activation = client.post(f"{CHATBOT_URL}/activations", json={
            "template_id": template_id, "channel_type": "whatsapp",
        }, headers=tenant_headers)
        reply = client.post(f"{CHATBOT_URL}/integrated-message", json={
            "text": "hola", "user_id": "5215500000000", "channel_type": "whatsapp",
        }, headers=tenant_headers).json()["data"]

        assert activation.status_code == 201
        assert activation.json()["data"]["is_active"] is True
        assert reply["messages"][0] == "Hola, gracias por escribir"
        assert reply["status"] == "completed"

    def test_archived_template_cannot_be_activated(self, client, tenant_headers):
        template_id = self._create(client, tenant_headers).json()["data"]["id"]
        client.delete(f"{CHATBOT_URL}/templates/{template_id}", headers=tenant_headers)

        response = client.post(
            f"{CHATBOT_URL}/activations", json={"template_id": template_id}, headers=tenant_headers
        )

        assert response.status_code == 400

    def test_deactivate(self, client, tenant_headers, greeting_flow):
        activation_id = client.get(f"{CHATBOT_URL}/activations", headers=tenant_headers).json()["data"][0]["id"]

        response = client.patch(
            f"{CHATBOT_URL}/activations/{activation_id}", json={"is_active": False}, headers=tenant_headers
        )
        reply = client.post(f"{CHATBOT_URL}/integrated-message", json={"text": "hola", "user_id": "u-1"},
                            headers=tenant_headers).json()["data"]

        assert response.json()["data"]["is_active"] is False
        assert reply["status"] == "no_active_flow"
