"""
Enum Utilities for VARCHAR-based Status Fields

ARCHITECTURE STANDARD:
━━━━━━━━━━━━━━━━━━━━━━
• Database: VARCHAR(30) - NOT PostgreSQL ENUM
• SQLAlchemy: String(30) with Mapped[str]
• Pydantic: Python Enum for input validation
• Case: All enum values stored in UPPERCASE

DATA FLOW:
━━━━━━━━━━
INPUT:
    Pydantic Enum → .value → String → Database
    Example: CycleStatus.OPEN → "OPEN" → VARCHAR

OUTPUT:
    Database → String → compared with Enum.value

CASE NORMALIZATION:
━━━━━━━━━━━━━━━━━━━
Use normalize_to_uppercase() or create_uppercase_validator()
to accept case-insensitive input while storing UPPERCASE.
"""

from enum import Enum
from typing import Any, Optional, Type, Set


def get_enum_value(value: Any) -> Optional[str]:
    """
    Safely get string value from an enum or string.

    Examples:
        >>> get_enum_value(CycleStatus.OPEN)
        'OPEN'
        >>> get_enum_value("OPEN")
        'OPEN'
        >>> get_enum_value(None)
        None
    """
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    return str(value)


def enum_values(enum_class: Type[Enum]) -> list:
    """Get all values from an enum class."""
    return [e.value for e in enum_class]


def enum_comment(enum_class: Type[Enum]) -> str:
    """
    Generate a comment string for VARCHAR column.

    Examples:
        >>> enum_comment(CycleStatus)
        'OPEN, CLOSED, INVOICED'
    """
    return ", ".join(enum_values(enum_class))


# =============================================================================
# CASE NORMALIZATION FOR PYDANTIC SCHEMAS
# =============================================================================

def normalize_to_uppercase(value: Any, valid_values: Set[str]) -> Any:
    """
    Normalize a string value to UPPERCASE if it's a valid enum value.

    Examples:
        >>> normalize_to_uppercase('cod', {'COD', 'PREPAID'})
        'COD'
        >>> normalize_to_uppercase('invalid', {'COD', 'PREPAID'})
        'invalid'  # Returns as-is for Pydantic to raise validation error
    """
    if value is None:
        return value
    if isinstance(value, str):
        upper_v = value.strip().upper().replace("-", "_").replace(" ", "_")
        if upper_v in valid_values:
            return upper_v
    return value


def create_uppercase_validator(field_name: str, valid_values: Set[str]) -> classmethod:
    """
    Create a Pydantic field_validator that normalizes values to UPPERCASE.

    Usage:
        class MySchema(BaseModel):
            payment_mode: PaymentMode

            _normalize_mode = create_uppercase_validator('payment_mode', VALID_PAYMENT_MODES)
    """
    from pydantic import field_validator

    @field_validator(field_name, mode='before')
    @classmethod
    def validate(cls, v):
        return normalize_to_uppercase(v, valid_values)

    return validate


# =============================================================================
# PRE-DEFINED VALID VALUE SETS
# =============================================================================

VALID_PAYMENT_MODES = {"PREPAID", "COD"}

VALID_DIRECTIONS = {"FORWARD", "RTO"}

VALID_PAYMENT_METHODS = {
    "WALLET_DEDUCTION", "BANK_TRANSFER", "UPI", "AUTO_DEBIT", "RAZORPAY"
}
