"""Error taxonomy for the vaultkeeper operator."""


class VaultOperatorError(Exception):
    """Base class for all errors raised by a reconciliation pass."""

    retryable = True


class ValidationError(VaultOperatorError):
    """The Vault spec describes something the operator refuses to build."""

    retryable = False


class MissingDependencyError(VaultOperatorError):
    """A prerequisite (e.g. the storage backend) is not configured yet."""


class TransientPlatformError(VaultOperatorError):
    """A call against the Kubernetes API failed; the pass is retried."""


class CertificateError(VaultOperatorError):
    """Loading, parsing or issuing part of the TLS chain failed."""


class EmptyCAError(CertificateError):
    """The secret holds no CA certificate or key."""


class ExpiredCAError(CertificateError):
    """The CA certificate is expired, or expires within the threshold."""
