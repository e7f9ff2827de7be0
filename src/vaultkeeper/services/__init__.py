"""Business logic services for the vaultkeeper operator."""

from . import apply
from . import cluster
from . import reconciler

__all__ = ["apply", "cluster", "reconciler"]
