from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509

from conftest import make_vault, raft_config
from vaultkeeper.errors import CertificateError, EmptyCAError, ExpiredCAError
from vaultkeeper.services.tls_manager import (
    ZERO_EXPIRATION,
    CertificateManager,
    TLSManager,
    format_expiration,
    pem_to_certificate,
    san_count,
)
from vaultkeeper.services.vault_resources import decode_data, encode_data


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def server_cert(secret):
    return pem_to_certificate(decode_data(secret["data"])["server.crt"])


def ca_cert(secret):
    return decode_data(secret["data"])["ca.crt"]


def test_format_expiration():
    assert format_expiration(None) == ZERO_EXPIRATION
    moment = datetime(2031, 5, 4, 3, 2, 1, 999, tzinfo=timezone.utc)
    assert format_expiration(moment) == "2031-05-04T03:02:01Z"


def test_new_chain_covers_every_host():
    vault = make_vault()
    secret, expiration = TLSManager().reconcile_secret(vault, None, None)

    assert secret["metadata"]["name"] == "vault-tls"
    assert set(decode_data(secret["data"])) == {"ca.crt", "ca.key", "server.crt", "server.key"}
    certificate = server_cert(secret)
    san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert "vault.default.svc.cluster.local" in san.get_values_for_type(x509.DNSName)
    assert san_count(certificate) == 4
    assert expiration <= certificate.not_valid_after_utc
    assert expiration > datetime.now(timezone.utc) + timedelta(days=364)


def test_valid_secret_is_kept():
    vault = make_vault()
    manager = TLSManager()
    secret, expiration = manager.reconcile_secret(vault, None, None)

    again, again_expiration = manager.reconcile_secret(vault, None, secret)

    assert again["data"] == secret["data"]
    assert again_expiration == expiration


def test_secret_near_expiry_is_reissued_with_same_ca():
    now = datetime.now(timezone.utc)
    clock = Clock(now)
    vault = make_vault()
    short = TLSManager(clock=clock, validity=timedelta(days=30), ca_validity=timedelta(days=3650))
    secret, _ = short.reconcile_secret(vault, None, None)

    clock.now = now + timedelta(days=25)
    renewed, expiration = short.reconcile_secret(vault, None, secret)

    assert renewed["data"]["server.crt"] != secret["data"]["server.crt"]
    assert ca_cert(renewed) == ca_cert(secret)
    assert expiration - clock.now > timedelta(days=29)


def test_expiring_ca_is_regenerated():
    now = datetime.now(timezone.utc)
    clock = Clock(now)
    vault = make_vault(tlsExpiryThreshold="24h")
    manager = TLSManager(clock=clock, validity=timedelta(days=10))
    secret, _ = manager.reconcile_secret(vault, None, None)

    clock.now = now + timedelta(days=9, hours=12)
    renewed, _ = manager.reconcile_secret(vault, None, secret)

    assert ca_cert(renewed) != ca_cert(secret)


def test_topology_change_reissues():
    manager = TLSManager()
    secret, _ = manager.reconcile_secret(make_vault(), None, None)

    vault = make_vault(config=raft_config(), size=3)
    renewed, _ = manager.reconcile_secret(vault, None, secret)

    assert renewed["data"]["server.crt"] != secret["data"]["server.crt"]
    assert ca_cert(renewed) == ca_cert(secret)
    assert san_count(server_cert(renewed)) == 4 + 3 * 3


def test_load_balancer_address_in_sans():
    service = {"spec": {"loadBalancerIP": "203.0.113.7"}}
    secret, _ = TLSManager().reconcile_secret(make_vault(), service, None)
    san = server_cert(secret).extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert [str(ip) for ip in san.get_values_for_type(x509.IPAddress)] == ["127.0.0.1", "203.0.113.7"]


def test_unparsable_server_certificate_is_an_error():
    secret = {"data": encode_data({"server.crt": "garbage", "ca.crt": "garbage"})}
    with pytest.raises(CertificateError):
        TLSManager().reconcile_secret(make_vault(), None, secret)


def test_load_ca_errors():
    manager = CertificateManager(["vault"])
    with pytest.raises(EmptyCAError):
        manager.load_ca("", "", timedelta(0))

    manager.new_chain()
    chain = manager.chain
    later = CertificateManager(["vault"], clock=lambda: datetime.now(timezone.utc) + timedelta(days=400))
    with pytest.raises(ExpiredCAError):
        later.load_ca(chain.ca_cert, chain.ca_key, timedelta(0))

    with pytest.raises(CertificateError):
        CertificateManager(["vault"]).load_ca(chain.ca_cert, "not a key", timedelta(0))
