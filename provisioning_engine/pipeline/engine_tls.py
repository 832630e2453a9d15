# provisioning_engine/pipeline/engine_tls.py
"""Per-host CA and certificate pairs for the container engine's mutual TLS API."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from ipaddress import AddressValueError, IPv4Address, ip_address
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

logger = logging.getLogger(__name__)

VALIDITY_DAYS = 3650


@dataclass
class EngineTLSBundle:
    """PEM text for the engine CA plus its server and client pairs."""
    ca_cert: str
    server_cert: str
    server_key: str
    client_cert: str
    client_key: str


def _generate_key():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return key, pem.decode()


def _name(organization: str, common_name: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])


def _key_usage(*, cert_sign: bool = False, key_encipherment: bool = False) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=not cert_sign,
        content_commitment=False,
        key_encipherment=key_encipherment,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=cert_sign,
        crl_sign=cert_sign,
        encipher_only=False,
        decipher_only=False,
    )


def _subject_alt_names(address: str) -> x509.SubjectAlternativeName:
    entries = [x509.DNSName("localhost"), x509.IPAddress(IPv4Address("127.0.0.1"))]
    if address in ("localhost", "127.0.0.1"):
        return x509.SubjectAlternativeName(entries)
    try:
        entries.append(x509.IPAddress(ip_address(address)))
    except (AddressValueError, ValueError):
        entries.append(x509.DNSName(address))
    return x509.SubjectAlternativeName(entries)


def _sign(builder: x509.CertificateBuilder, ca_key) -> str:
    cert = builder.sign(ca_key, hashes.SHA256())
    return cert.public_bytes(serialization.Encoding.PEM).decode()


def generate_engine_tls(address: str, *, organization: str, now: Optional[datetime] = None) -> EngineTLSBundle:
    """
    Self-signed CA plus a server pair for ``address`` and a client pair.

    The server certificate carries ``address`` as a SAN so clients can verify
    the engine endpoint by IP or hostname.
    """
    now = now or datetime.now(timezone.utc)
    not_before = now - timedelta(minutes=5)
    not_after = now + timedelta(days=VALIDITY_DAYS)

    ca_key, _ = _generate_key()
    ca_name = _name(organization, f"{organization} Engine CA {address}")
    ca_ski = x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key())
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(_key_usage(cert_sign=True), critical=True)
        .add_extension(ca_ski, critical=False)
    )
    ca_pem = _sign(ca_cert, ca_key)
    aki = x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski)

    def leaf(common_name: str, public_key, usage_oid, san=None) -> str:
        builder = (
            x509.CertificateBuilder()
            .subject_name(_name(organization, common_name))
            .issuer_name(ca_name)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(_key_usage(key_encipherment=True), critical=True)
            .add_extension(x509.ExtendedKeyUsage([usage_oid]), critical=False)
            .add_extension(aki, critical=False)
        )
        if san is not None:
            builder = builder.add_extension(san, critical=False)
        return _sign(builder, ca_key)

    server_key, server_key_pem = _generate_key()
    server_pem = leaf(address, server_key.public_key(), ExtendedKeyUsageOID.SERVER_AUTH, _subject_alt_names(address))

    client_key, client_key_pem = _generate_key()
    client_pem = leaf("client", client_key.public_key(), ExtendedKeyUsageOID.CLIENT_AUTH)

    logger.info(f"[engine_tls] Generated engine CA and certificate pairs for {address}")
    return EngineTLSBundle(
        ca_cert=ca_pem,
        server_cert=server_pem,
        server_key=server_key_pem,
        client_cert=client_pem,
        client_key=client_key_pem,
    )
