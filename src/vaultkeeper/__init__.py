"""Kubernetes operator managing HashiCorp Vault clusters."""

__version__ = "0.1.0"
