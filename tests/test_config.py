from vaultkeeper.config import DEFAULT_BANK_VAULTS_IMAGE, OperatorSettings


def test_defaults(monkeypatch):
    for key in ("LOG_LEVEL", "SYNC_PERIOD", "BANK_VAULTS_IMAGE", "WATCH_NAMESPACE", "MANAGE_CRDS"):
        monkeypatch.delenv(key, raising=False)

    settings = OperatorSettings.from_env()

    assert settings.log_level == "INFO"
    assert settings.sync_period == 60.0
    assert settings.bank_vaults_image == DEFAULT_BANK_VAULTS_IMAGE
    assert settings.watch_namespace == ""
    assert settings.manage_crds is True


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("SYNC_PERIOD", "30")
    monkeypatch.setenv("REQUEUE_DELAY", "2.5")
    monkeypatch.setenv("WATCH_NAMESPACE", "vault-system")
    monkeypatch.setenv("MANAGE_CRDS", "false")

    settings = OperatorSettings.from_env()

    assert settings.log_level == "DEBUG"
    assert settings.sync_period == 30.0
    assert settings.requeue_delay == 2.5
    assert settings.watch_namespace == "vault-system"
    assert settings.manage_crds is False
