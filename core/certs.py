"""
TLS Certificate Management

The control surface serves TLS with a self-signed certificate kept in the
TLS directory as `cert.pem` and `key.pem`.

On startup check_certs():
    - either file missing  -> generate both
    - cert.pem unparseable -> refuse to start (CertificateError)
    - certificate expired  -> generate both
    - otherwise            -> use the existing files

Generated certificates are ECDSA P-256, self-signed, valid for 365 days,
flagged as a CA, with the hostname and `localhost` as DNS names and
127.0.0.1 / ::1 as IP addresses.
"""

import ipaddress
import secrets
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from core.errors import ConfigInvalidError
from core.logging import get_logger

logger = get_logger(__name__)

CERT_FILE = "cert.pem"
KEY_FILE = "key.pem"
CERT_LIFETIME = timedelta(days=365)
ORGANIZATION = "venuehub"


class CertificateError(ConfigInvalidError):
    pass


class CertificateExpiredError(CertificateError):
    pass


def verify_cert(pem_data: bytes, now: Optional[datetime] = None) -> x509.Certificate:
    """
    Parse a PEM certificate and check it has not expired.

    Raises:
        CertificateError: If the data is not a PEM certificate
        CertificateExpiredError: If the certificate is past its expiry
    """
    if not pem_data or b"-----BEGIN CERTIFICATE-----" not in pem_data:
        raise CertificateError("cert data is not a PEM encoded certificate")
    try:
        cert = x509.load_pem_x509_certificate(pem_data)
    except ValueError as e:
        raise CertificateError(f"unable to parse TLS certificate: {e}") from e

    now = now or datetime.now(timezone.utc)
    if now > cert.not_valid_after_utc:
        raise CertificateExpiredError(f"certificate expired at {cert.not_valid_after_utc}")
    return cert


def generate_certificate(target_dir: Union[str, Path], hostname: Optional[str] = None) -> None:
    """Create a fresh key pair and self-signed certificate in target_dir."""
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)

    host = hostname or socket.gethostname()
    dns_names = [host] if host == "localhost" else [host, "localhost"]

    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
        x509.NameAttribute(NameOID.COMMON_NAME, host),
    ])
    now = datetime.now(timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(secrets.randbits(128) or 1)
        .not_valid_before(now)
        .not_valid_after(now + CERT_LIFETIME)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName(n) for n in dns_names]
                + [
                    x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                    x509.IPAddress(ipaddress.ip_address("::1")),
                ]
            ),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    (target_dir / CERT_FILE).write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    (target_dir / KEY_FILE).write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
    )
    logger.info(f"TLS certificate and key written to {target_dir}")


def check_certs(cert_dir: Union[str, Path], now: Optional[datetime] = None) -> bool:
    """
    Make sure usable TLS material exists.

    `now` overrides the clock used for the expiry check.

    Returns:
        True if new material was generated

    Raises:
        CertificateError: If cert.pem exists but cannot be parsed
    """
    cert_dir = Path(cert_dir)
    cert_file = cert_dir / CERT_FILE
    key_file = cert_dir / KEY_FILE

    if not cert_file.exists() or not key_file.exists():
        logger.warning("TLS certificate/key file missing, recreating...")
        generate_certificate(cert_dir)
        return True

    try:
        verify_cert(cert_file.read_bytes(), now=now)
    except CertificateExpiredError:
        logger.warning("TLS certificate has expired, regenerating...")
        generate_certificate(cert_dir)
        return True

    logger.info("TLS certificate and key files exist, will use them.")
    return False
