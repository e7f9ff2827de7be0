"""Handler modules for the vaultkeeper operator."""

# Import handlers so kopf registers them
from . import vault_handler

__all__ = ["vault_handler"]
