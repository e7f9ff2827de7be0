"""Base classes for CRD specifications."""

from pydantic import BaseModel, Field
from typing import Optional, List


class CRDCondition(BaseModel):
    """Component condition as reported in the Vault status."""

    type: str
    status: str  # True, False, Unknown
    error: Optional[str] = None
    message: Optional[str] = None


class CRDStatus(BaseModel):
    """Base class for all CRD status objects."""

    conditions: List[CRDCondition] = Field(default_factory=list)

    class Config:
        extra = "allow"


class CRDSpec(BaseModel):
    """Base class for all CRD spec objects."""

    class Config:
        extra = "forbid"
        validate_assignment = True
