# supporter_app/models/__init__.py
"""
Database models package
"""

from .audit import SYSTEM_ACTOR, AuditLog, ConfigEntry
from .base import BaseModel, db
from .event import DEFAULT_CURRENCY, Event, EventType, ProductMapping, ProductMeaning, SourceSystem
from .membership import (
    AudienceMembership,
    BillingMethod,
    EngagementAggregate,
    Membership,
    MembershipCadence,
    MembershipStatus,
    MembershipTier,
)
from .supporter import (
    FLAG_SHARED_EMAIL,
    EmailAlias,
    Supporter,
    SupporterType,
    SupporterTypeSource,
)

__all__ = [
    "db",
    "BaseModel",
    "SYSTEM_ACTOR",
    # Identity
    "Supporter",
    "SupporterType",
    "SupporterTypeSource",
    "EmailAlias",
    "FLAG_SHARED_EMAIL",
    # Activity
    "Event",
    "EventType",
    "SourceSystem",
    "ProductMapping",
    "ProductMeaning",
    "DEFAULT_CURRENCY",
    # Membership
    "Membership",
    "MembershipTier",
    "MembershipCadence",
    "MembershipStatus",
    "BillingMethod",
    "AudienceMembership",
    "EngagementAggregate",
    # Audit/config
    "AuditLog",
    "ConfigEntry",
]
