""" Operator settings read from the environment.
"""

import os

from pydantic import BaseModel, Field

DEFAULT_BANK_VAULTS_IMAGE = "ghcr.io/bank-vaults/bank-vaults:latest"


def _env_bool(key, default):
    return os.getenv(key, default).lower() in ("true", "1", "yes")


class OperatorSettings(BaseModel):
    """Runtime knobs for the operator process."""

    log_level: str = Field(default="INFO")
    worker_limit: int = Field(default=5, description="Concurrent reconciliations")
    posting_enabled: bool = Field(default=False)
    server_timeout: int = Field(default=60, description="Watch timeout in seconds")
    sync_period: float = Field(
        default=60.0, description="Seconds between periodic resyncs of each Vault"
    )
    requeue_delay: float = Field(
        default=5.0, description="Seconds before retrying a suspended or failed pass"
    )
    health_probe_timeout: float = Field(
        default=2.0, description="Per-replica health probe timeout in seconds"
    )
    watch_namespace: str = Field(default="")
    bank_vaults_image: str = Field(default=DEFAULT_BANK_VAULTS_IMAGE)
    manage_crds: bool = Field(default=True)
    generate_crd_files: bool = Field(default=False)

    @classmethod
    def from_env(cls):
        """ Build settings from the process environment.
        """
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            worker_limit=int(os.getenv("WORKER_LIMIT", "5")),
            posting_enabled=_env_bool("POSTING_ENABLED", "false"),
            server_timeout=int(os.getenv("SERVER_TIMEOUT", "60")),
            sync_period=float(os.getenv("SYNC_PERIOD", "60")),
            requeue_delay=float(os.getenv("REQUEUE_DELAY", "5")),
            health_probe_timeout=float(os.getenv("HEALTH_PROBE_TIMEOUT", "2")),
            watch_namespace=os.getenv("WATCH_NAMESPACE", ""),
            bank_vaults_image=os.getenv("BANK_VAULTS_IMAGE") or DEFAULT_BANK_VAULTS_IMAGE,
            manage_crds=_env_bool("MANAGE_CRDS", "true"),
            generate_crd_files=_env_bool("GENERATE_CRD_FILES", "false"),
        )


_settings = None


def get_settings():
    """ Process-wide settings, loaded lazily from the environment.
    """
    global _settings
    if _settings is None:
        _settings = OperatorSettings.from_env()
    return _settings
