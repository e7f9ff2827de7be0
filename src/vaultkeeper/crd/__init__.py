"""CRD management for the vaultkeeper operator."""

from .registry import CRDRegistry
from .base import CRDCondition, CRDSpec, CRDStatus

__all__ = ["CRDRegistry", "CRDCondition", "CRDSpec", "CRDStatus"]
