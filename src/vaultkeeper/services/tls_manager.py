""" CA and server certificate lifecycle for the Vault TLS secret.
"""

import ipaddress
import logging
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from vaultkeeper.errors import CertificateError, EmptyCAError, ExpiredCAError
from vaultkeeper.services.vault_resources import (
    decode_data,
    encode_data,
    hosts_and_ips_for_vault,
    tls_secret_for_vault,
)

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY = timedelta(hours=8760)
ZERO_EXPIRATION = "0001-01-01T00:00:00Z"


def utcnow():
    return datetime.now(timezone.utc)


def format_expiration(moment):
    if moment is None:
        return ZERO_EXPIRATION
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def pem_to_certificate(pem):
    if isinstance(pem, str):
        pem = pem.encode()
    try:
        return x509.load_pem_x509_certificate(pem)
    except ValueError as e:
        raise CertificateError(f"failed to parse certificate: {e}") from e


def san_count(certificate):
    """ Number of DNS names plus IP addresses the certificate covers.
    """
    try:
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return 0
    return len(san.get_values_for_type(x509.DNSName)) + len(
        san.get_values_for_type(x509.IPAddress)
    )


def _pem_key(key):
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def _pem_cert(cert):
    return cert.public_bytes(serialization.Encoding.PEM).decode()


class CertificateChain:
    """ PEM encoded CA and server material.
    """

    def __init__(self, ca_cert="", ca_key="", server_cert="", server_key=""):
        self.ca_cert = ca_cert
        self.ca_key = ca_key
        self.server_cert = server_cert
        self.server_key = server_key

    def as_data(self):
        return {
            "ca.crt": self.ca_cert,
            "ca.key": self.ca_key,
            "server.crt": self.server_cert,
            "server.key": self.server_key,
        }


class CertificateManager:
    """ Issues a CA and server certificates for a fixed host list.

    ECDSA P-256 keys throughout. The clock is injectable so expiry
    handling can be exercised without waiting.
    """

    def __init__(self, hosts, validity=DEFAULT_VALIDITY, ca_validity=None, clock=utcnow):
        self.hosts = list(hosts)
        self.validity = validity
        self.ca_validity = ca_validity or validity
        self.clock = clock
        self.chain = CertificateChain()
        self._ca_cert = None
        self._ca_key = None

    def load_ca(self, ca_cert_pem, ca_key_pem, threshold):
        """ Reuse an existing CA.

        Raises:
            EmptyCAError: certificate or key missing
            ExpiredCAError: the CA expires within the threshold
            CertificateError: the material does not parse
        """
        if not ca_cert_pem or not ca_key_pem:
            raise EmptyCAError("an empty CA was provided")
        cert = pem_to_certificate(ca_cert_pem)
        try:
            key = serialization.load_pem_private_key(
                ca_key_pem if isinstance(ca_key_pem, bytes) else ca_key_pem.encode(),
                password=None,
            )
        except (ValueError, TypeError) as e:
            raise CertificateError(f"failed to parse CA key: {e}") from e

        if cert.not_valid_after_utc - self.clock() < threshold:
            raise ExpiredCAError("the CA certificate is expired or expires within the threshold")

        self._ca_cert, self._ca_key = cert, key
        self.chain.ca_cert = _pem_cert(cert)
        self.chain.ca_key = _pem_key(key)

    def new_chain(self):
        """ Create a fresh self-signed CA.
        """
        key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "vaultkeeper"),
            x509.NameAttribute(NameOID.COMMON_NAME, "vaultkeeper CA"),
        ])
        now = self.clock()
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + self.ca_validity)
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(key, hashes.SHA256())
        )
        self._ca_cert, self._ca_key = cert, key
        self.chain = CertificateChain(ca_cert=_pem_cert(cert), ca_key=_pem_key(key))

    def generate_server(self):
        """ Issue a server certificate for every host, signed by the loaded CA.
        """
        if self._ca_cert is None:
            raise CertificateError("no CA loaded to sign the server certificate")

        names = []
        dns_names = []
        for host in self.hosts:
            try:
                names.append(x509.IPAddress(ipaddress.ip_address(host)))
            except ValueError:
                names.append(x509.DNSName(host))
                dns_names.append(host)
        common_name = dns_names[0] if dns_names else "vault"

        key = ec.generate_private_key(ec.SECP256R1())
        now = self.clock()
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "vaultkeeper"),
                x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            ]))
            .issuer_name(self._ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + self.validity)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.ExtendedKeyUsage(
                    [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
                ),
                critical=False,
            )
            .add_extension(x509.SubjectAlternativeName(names), critical=False)
            .sign(self._ca_key, hashes.SHA256())
        )
        self.chain.server_cert = _pem_cert(cert)
        self.chain.server_key = _pem_key(key)
        return cert


class TLSManager:
    """ Decides whether the TLS secret is kept, re-issued or created.
    """

    def __init__(self, clock=utcnow, validity=DEFAULT_VALIDITY, ca_validity=None):
        self.clock = clock
        self.validity = validity
        self.ca_validity = ca_validity

    def _manager(self, hosts):
        return CertificateManager(
            hosts, validity=self.validity, ca_validity=self.ca_validity, clock=self.clock
        )

    def _issue(self, vault, hosts, data):
        manager = self._manager(hosts)
        try:
            manager.load_ca(data.get("ca.crt"), data.get("ca.key"), vault.spec.get_tls_expiry_threshold())
        except (EmptyCAError, ExpiredCAError) as e:
            logger.info(f"TLS CA for {vault.namespace}/{vault.name} will be regenerated: {e}")
            manager.new_chain()
        server = manager.generate_server()
        ca = pem_to_certificate(manager.chain.ca_cert)
        secret = tls_secret_for_vault(vault, encode_data(manager.chain.as_data()))
        return secret, min(server.not_valid_after_utc, ca.not_valid_after_utc)

    def reconcile_secret(self, vault, service, secret):
        """ Return the desired TLS secret and the expiration to advertise.

        Args:
            vault: parsed Vault resource
            service: live primary Service, used for LB addresses
            secret: live TLS secret dict, or None
        """
        hosts = hosts_and_ips_for_vault(vault, service)
        raw = (secret or {}).get("data") or {}
        if not raw:
            logger.info(f"Creating TLS chain for {vault.namespace}/{vault.name}")
            return self._issue(vault, hosts, {})

        data = decode_data(raw)
        certificate = pem_to_certificate(data.get("server.crt") or b"")
        expiration = certificate.not_valid_after_utc
        if data.get("ca.crt"):
            ca_certificate = pem_to_certificate(data["ca.crt"])
            expiration = min(expiration, ca_certificate.not_valid_after_utc)

        if expiration - self.clock() < vault.spec.get_tls_expiry_threshold():
            logger.info(
                f"Certificate expiration date too close for {vault.namespace}/{vault.name}: "
                f"{format_expiration(expiration)}"
            )
            return self._issue(vault, hosts, data)

        if san_count(certificate) != len(hosts):
            logger.info(f"TLS server hosts have changed for {vault.namespace}/{vault.name}")
            return self._issue(vault, hosts, data)

        return tls_secret_for_vault(vault, dict(raw)), expiration
