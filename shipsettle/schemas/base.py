"""
Base Schema Classes for Pydantic Models

RULE: All schemas that read from ORM rows (`from_attributes=True`) inherit
from BaseResponseSchema; inputs handed to the services inherit from
BaseCreateSchema.
"""

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for schemas built from ORM models.

    Usage:
        class InvoiceSummary(BaseResponseSchema):
            id: UUID
            invoice_number: str
    """
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for input schemas.

    Unknown fields from callers are ignored (forward compatibility).
    """
    model_config = ConfigDict(
        extra='ignore',
    )
