"""
Catalog nodes: list a tenant's services or products.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.catalog import Product, Service

from chatbot.conversation.context import ConversationContext
from chatbot.conversation.flow_graph import NodeType
from .base import NodeResult, executor_registry

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10

SERVICES_MESSAGE = "Estos son nuestros servicios:\n{{services_list}}"
PRODUCTS_MESSAGE = "Estos son nuestros productos:\n{{products_list}}"
NO_SERVICES_MESSAGE = "Por el momento no tenemos servicios disponibles."
NO_PRODUCTS_MESSAGE = "Por el momento no tenemos productos disponibles."


def format_price(price: Any) -> str:
    if price is None:
        return "consultar"
    value = Decimal(str(price))
    if value == value.to_integral_value():
        return f"${int(value):,}"
    return f"${value:,.2f}"


def _price(item: Any) -> Optional[float]:
    return float(item.price) if item.price is not None else None


def _filter_and_sort(
    items: List[Any],
    node_data: Dict[str, Any],
    sort_keys: Dict[str, Any]
) -> List[Any]:
    if node_data.get("filter_by_price"):
        min_price = node_data.get("min_price")
        max_price = node_data.get("max_price")
        if min_price is not None:
            items = [i for i in items if _price(i) is not None and _price(i) >= float(min_price)]
        if max_price is not None:
            items = [i for i in items if _price(i) is not None and _price(i) <= float(max_price)]

    sort_key = sort_keys.get(node_data.get("sort_by") or "name", sort_keys["name"])
    items = sorted(items, key=sort_key)

    limit = int(node_data.get("limit") or DEFAULT_LIMIT)
    return items[:limit]


def _media(items: List[Any]) -> List[Dict[str, str]]:
    return [
        {"type": "image", "url": item.image_url, "caption": item.name}
        for item in items
        if item.image_url
    ]


def _missing_last(value: Any) -> tuple:
    return (value is None, value or 0)


SERVICE_SORT_KEYS = {
    "name": lambda s: (s.name or "").lower(),
    "price": lambda s: _missing_last(_price(s)),
    "duration": lambda s: _missing_last(s.duration),
}

PRODUCT_SORT_KEYS = {
    "name": lambda p: (p.name or "").lower(),
    "price": lambda p: _missing_last(_price(p)),
}


def service_line(service: Service) -> str:
    line = f"• {service.name} - {format_price(service.price)}"
    if service.duration:
        line += f" ({service.duration} min)"
    return line


def product_line(product: Product) -> str:
    return f"• {product.name} - {format_price(product.price)}"


@executor_registry.register(NodeType.SERVICES.value, "service_list", "services_list")
async def list_services(
    tenant_id: str,
    context: ConversationContext,
    node_data: Dict[str, Any],
    db: Session
) -> NodeResult:
    ctx = context.copy()
    stmt = select(Service).where(Service.tenant_id == tenant_id, Service.is_active == True)  # noqa: E712
    category = node_data.get("category") or ctx.get("selected_category")
    if category:
        stmt = stmt.where(Service.category == category)

    services = _filter_and_sort(list(db.execute(stmt).scalars().all()), node_data, SERVICE_SORT_KEYS)

    ctx.set("available_services", [
        {
            "id": s.id,
            "name": s.name,
            "price": _price(s),
            "duration": s.duration,
            "category": s.category,
        }
        for s in services
    ])

    if services:
        listing = "\n".join(service_line(s) for s in services)
        message = ctx.render(node_data.get("message") or SERVICES_MESSAGE, {"services_list": listing})
    else:
        message = ctx.render(node_data.get("empty_message") or NO_SERVICES_MESSAGE)

    result = NodeResult("response", ctx, message, metadata={"count": len(services)})
    if node_data.get("include_images"):
        result.metadata["media"] = _media(services)

    logger.debug(f"Listed {len(services)} services for tenant {tenant_id}")
    return result


@executor_registry.register(NodeType.PRODUCTS.value, "product_list", "products_list")
async def list_products(
    tenant_id: str,
    context: ConversationContext,
    node_data: Dict[str, Any],
    db: Session
) -> NodeResult:
    ctx = context.copy()
    stmt = select(Product).where(Product.tenant_id == tenant_id, Product.is_active == True)  # noqa: E712
    category = node_data.get("category") or ctx.get("selected_category")
    if category:
        stmt = stmt.where(Product.category == category)
    if node_data.get("show_only_in_stock"):
        stmt = stmt.where(Product.in_stock == True)  # noqa: E712

    products = _filter_and_sort(list(db.execute(stmt).scalars().all()), node_data, PRODUCT_SORT_KEYS)

    ctx.set("available_products", [
        {
            "id": p.id,
            "name": p.name,
            "price": _price(p),
            "category": p.category,
            "in_stock": p.in_stock,
        }
        for p in products
    ])

    if products:
        listing = "\n".join(product_line(p) for p in products)
        message = ctx.render(node_data.get("message") or PRODUCTS_MESSAGE, {"products_list": listing})
    else:
        message = ctx.render(node_data.get("empty_message") or NO_PRODUCTS_MESSAGE)

    result = NodeResult("response", ctx, message, metadata={"count": len(products)})
    if node_data.get("include_images"):
        result.metadata["media"] = _media(products)

    logger.debug(f"Listed {len(products)} products for tenant {tenant_id}")
    return result
