"""
Chatbot Template Service

Stores flow templates as whole documents, resolves the template active for a
tenant channel and keeps parsed documents in a Redis cache.
"""

import json
import logging
from typing import Dict, List, Optional, Any, Tuple

from redis import Redis, RedisError
from sqlalchemy import select, desc, func
from sqlalchemy.orm import Session

from chatbot.conversation.flow_graph import FlowLoader, FlowTemplate

from ..core.config import settings
from ..core.database import get_redis_client
from ..models.chatbot import ChatbotTemplate, ChatbotActivation

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "chatbot:template"


class TemplateNotFoundError(Exception):
    pass


class TemplateService:
    """Service class for chatbot templates and activations."""

    def __init__(self, redis_client: Optional[Redis] = None):
        self._redis = redis_client

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_client()
        return self._redis

    @redis.setter
    def redis(self, client: Redis) -> None:
        self._redis = client

    @staticmethod
    def cache_key(tenant_id: str, template_id: str) -> str:
        return f"{CACHE_KEY_PREFIX}:{tenant_id}:{template_id}"

    # -- templates ------------------------------------------------------

    def list_templates(self, db: Session, tenant_id: str, status: Optional[str] = None) -> List[ChatbotTemplate]:
        stmt = select(ChatbotTemplate).where(ChatbotTemplate.tenant_id == tenant_id)
        if status:
            stmt = stmt.where(ChatbotTemplate.status == status)
        return list(db.execute(stmt.order_by(desc(ChatbotTemplate.updated_at))).scalars().all())

    def count_templates(self, db: Session, tenant_id: str) -> int:
        return db.execute(
            select(func.count(ChatbotTemplate.id)).where(
                ChatbotTemplate.tenant_id == tenant_id,
                ChatbotTemplate.status != "archived"
            )
        ).scalar_one()

    def get_template(self, db: Session, tenant_id: str, template_id: str) -> ChatbotTemplate:
        template = db.execute(
            select(ChatbotTemplate).where(
                ChatbotTemplate.id == template_id,
                ChatbotTemplate.tenant_id == tenant_id
            )
        ).scalar_one_or_none()
        if template is None:
            raise TemplateNotFoundError(f"Template {template_id} not found")
        return template

    def create_template(self, db: Session, tenant_id: str, document: Dict[str, Any]) -> ChatbotTemplate:
        """Validate and store a new template document; raises FlowDefinitionError."""
        FlowLoader.load_flow_from_dict({**document, "tenant_id": tenant_id})

        template = ChatbotTemplate(
            tenant_id=tenant_id,
            name=document.get("name") or "Untitled flow",
            description=document.get("description"),
            status=document.get("status") or "draft",
            nodes=list(document.get("nodes") or []),
            edges=list(document.get("edges") or []),
            version=1,
        )
        db.add(template)
        db.commit()
        db.refresh(template)

        logger.info(f"Created template {template.id} for tenant {tenant_id}")
        return template

    def replace_template(
        self,
        db: Session,
        tenant_id: str,
        template_id: str,
        document: Dict[str, Any]
    ) -> ChatbotTemplate:
        """Replace the whole document; the version is bumped and the cache dropped."""
        template = self.get_template(db, tenant_id, template_id)
        FlowLoader.load_flow_from_dict({**document, "id": template_id, "tenant_id": tenant_id})

        template.name = document.get("name") or template.name
        template.description = document.get("description")
        template.status = document.get("status") or template.status
        template.nodes = list(document.get("nodes") or [])
        template.edges = list(document.get("edges") or [])
        template.version = (template.version or 1) + 1
        db.commit()
        db.refresh(template)

        self.invalidate_cache(tenant_id, template_id)
        logger.info(f"Replaced template {template_id} (version {template.version})")
        return template

    def archive_template(self, db: Session, tenant_id: str, template_id: str) -> ChatbotTemplate:
        template = self.get_template(db, tenant_id, template_id)
        template.status = "archived"
        for activation in db.execute(
            select(ChatbotActivation).where(ChatbotActivation.template_id == template_id)
        ).scalars():
            activation.is_active = False
        db.commit()

        self.invalidate_cache(tenant_id, template_id)
        return template

    def load_flow(self, db: Session, tenant_id: str, template_id: str) -> FlowTemplate:
        """Parsed flow for a template, served from cache when possible."""
        cached = self._cache_get(tenant_id, template_id)
        if cached is not None:
            return FlowLoader.load_flow_from_dict(cached, validate=False)

        template = self.get_template(db, tenant_id, template_id)
        document = self.to_document(template)
        flow = FlowLoader.load_flow_from_dict(document)
        self._cache_set(tenant_id, template_id, document)
        return flow

    @staticmethod
    def to_document(template: ChatbotTemplate) -> Dict[str, Any]:
        return {
            "id": template.id,
            "tenant_id": template.tenant_id,
            "name": template.name,
            "description": template.description,
            "status": template.status,
            "version": template.version,
            "nodes": template.nodes or [],
            "edges": template.edges or [],
        }

    # -- activations ----------------------------------------------------

    def list_activations(self, db: Session, tenant_id: str) -> List[ChatbotActivation]:
        return list(db.execute(
            select(ChatbotActivation).where(ChatbotActivation.tenant_id == tenant_id)
            .order_by(desc(ChatbotActivation.created_at))
        ).scalars().all())

    def create_activation(
        self,
        db: Session,
        tenant_id: str,
        template_id: str,
        channel_type: str,
        config: Optional[Dict[str, Any]] = None
    ) -> ChatbotActivation:
        """Activate a template on a channel, deactivating the channel's previous activation."""
        self.get_template(db, tenant_id, template_id)

        for previous in db.execute(
            select(ChatbotActivation).where(
                ChatbotActivation.tenant_id == tenant_id,
                ChatbotActivation.channel_type == channel_type,
                ChatbotActivation.is_active == True  # noqa: E712
            )
        ).scalars():
            previous.is_active = False

        activation = ChatbotActivation(
            tenant_id=tenant_id,
            template_id=template_id,
            channel_type=channel_type,
            is_active=True,
            config=config or {},
        )
        db.add(activation)
        db.commit()
        db.refresh(activation)
        return activation

    def set_activation_state(self, db: Session, tenant_id: str, activation_id: str, is_active: bool) -> ChatbotActivation:
        activation = db.execute(
            select(ChatbotActivation).where(
                ChatbotActivation.id == activation_id,
                ChatbotActivation.tenant_id == tenant_id
            )
        ).scalar_one_or_none()
        if activation is None:
            raise TemplateNotFoundError(f"Activation {activation_id} not found")
        activation.is_active = is_active
        db.commit()
        db.refresh(activation)
        return activation

    def get_active_activation(self, db: Session, tenant_id: str, channel_type: str) -> Optional[ChatbotActivation]:
        """Active activation for the channel, falling back to the default channel."""
        channels = [channel_type]
        if channel_type != settings.DEFAULT_CHANNEL_TYPE:
            channels.append(settings.DEFAULT_CHANNEL_TYPE)

        for channel in channels:
            activation = db.execute(
                select(ChatbotActivation).where(
                    ChatbotActivation.tenant_id == tenant_id,
                    ChatbotActivation.channel_type == channel,
                    ChatbotActivation.is_active == True  # noqa: E712
                ).order_by(desc(ChatbotActivation.created_at))
            ).scalars().first()
            if activation is not None:
                return activation
        return None

    def get_active_template(
        self,
        db: Session,
        tenant_id: str,
        channel_type: str
    ) -> Optional[Tuple[ChatbotActivation, FlowTemplate]]:
        activation = self.get_active_activation(db, tenant_id, channel_type)
        if activation is None:
            return None
        return activation, self.load_flow(db, tenant_id, activation.template_id)

    # -- cache ----------------------------------------------------------

    def invalidate_cache(self, tenant_id: str, template_id: Optional[str] = None) -> int:
        """Drop cached documents for one template or all of a tenant's templates."""
        try:
            if template_id:
                return int(self.redis.delete(self.cache_key(tenant_id, template_id)) or 0)
            keys = list(self.redis.scan_iter(match=f"{CACHE_KEY_PREFIX}:{tenant_id}:*"))
            return int(self.redis.delete(*keys) or 0) if keys else 0
        except RedisError as e:
            logger.warning(f"Template cache invalidation failed for tenant {tenant_id}: {e}")
            return 0

    def _cache_get(self, tenant_id: str, template_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self.redis.get(self.cache_key(tenant_id, template_id))
        except RedisError as e:
            logger.warning(f"Template cache read failed: {e}")
            return None
        if not isinstance(raw, (str, bytes)):
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding corrupt cache entry for template {template_id}")
            return None

    def _cache_set(self, tenant_id: str, template_id: str, document: Dict[str, Any]) -> None:
        try:
            self.redis.setex(
                self.cache_key(tenant_id, template_id),
                settings.TEMPLATE_CACHE_TTL,
                json.dumps(document, default=str),
            )
        except RedisError as e:
            logger.warning(f"Template cache write failed: {e}")


# Global template service instance
template_service = TemplateService()
