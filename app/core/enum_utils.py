"""
Enum Utilities for VARCHAR-based Status Fields

ARCHITECTURE STANDARD:
━━━━━━━━━━━━━━━━━━━━━━
• Database: VARCHAR(20) - NOT database ENUM types
• SQLAlchemy: String(20) with Mapped[str]
• Pydantic / services: Python str Enum for validation
• Case: billing and payment statuses are stored in lowercase

USAGE PATTERNS:
━━━━━━━━━━━━━━━
1. In SQLAlchemy Models:
   status: Mapped[str] = mapped_column(String(20), default=InvoiceStatus.PENDING.value)

2. Accepting loose input (webhooks, query params, plan rows):
   source = parse_enum(PaymentSource, raw, default=None)
"""

from enum import Enum
from typing import Any, Optional, TypeVar, Type


T = TypeVar('T', bound=Enum)


def parse_enum(enum_cls: Type[T], value: Any, default: Optional[T] = None) -> Optional[T]:
    """
    Case-insensitive lookup of an enum member by value or name.

    Returns `default` when the value does not match any member.
    """
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip().lower()
    for member in enum_cls:
        if str(member.value).lower() == text or member.name.lower() == text:
            return member
    return default
