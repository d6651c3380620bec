from .base import Base, TimestampMixin, SoftDeleteMixin, UUIDPrimaryKeyMixin

# Tenancy
from .tenant import Tenant, PlanModule, Agent

# CRM Models
from .crm import Lead, LeadActivity

# Scheduling Models
from .scheduling import (
    BusinessHours,
    BusinessHoursException,
    AppointmentSettings,
    AppointmentType,
    Appointment,
    BlockedTimeSlot
)

# Catalog Models
from .catalog import Service, Product

# Chatbot Models
from .chatbot import (
    ChatbotTemplate,
    ChatbotActivation,
    ConversationSession,
    ConversationMessage,
    NodeTransition
)

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "SoftDeleteMixin",
    "UUIDPrimaryKeyMixin",

    # Tenancy
    "Tenant",
    "PlanModule",
    "Agent",

    # CRM
    "Lead",
    "LeadActivity",

    # Scheduling
    "BusinessHours",
    "BusinessHoursException",
    "AppointmentSettings",
    "AppointmentType",
    "Appointment",
    "BlockedTimeSlot",

    # Catalog
    "Service",
    "Product",

    # Chatbot
    "ChatbotTemplate",
    "ChatbotActivation",
    "ConversationSession",
    "ConversationMessage",
    "NodeTransition"
]
