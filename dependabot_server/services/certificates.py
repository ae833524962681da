"""Certificate authority trusted by every job's egress proxy.

The proxy intercepts TLS from the updater, so the updater container installs
this CA into its trust store and the proxy signs leaf certificates with the key.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from dependabot_server.utils.time import utc_now

logger = logging.getLogger(__name__)

KEY_SIZE = 2048
VALIDITY = timedelta(days=730)
CERT_FILE_NAME = "cert.crt"
KEY_FILE_NAME = "cert.key"

SUBJECT = x509.Name(
    [
        x509.NameAttribute(NameOID.COMMON_NAME, "Dependabot Internal CA"),
        x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, "Dependabot"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "GitHub Inc."),
        x509.NameAttribute(NameOID.LOCALITY_NAME, "San Francisco"),
        x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, "California"),
        x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
    ]
)


@dataclass(frozen=True)
class CertificateAuthority:
    cert: str
    key: str


class CertificateAuthorityNotInitialized(RuntimeError):
    pass


def generate_certificate_authority() -> CertificateAuthority:
    key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
    now = utc_now()
    certificate = (
        x509.CertificateBuilder()
        .subject_name(SUBJECT)
        .issuer_name(SUBJECT)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )

    cert_pem = certificate.public_bytes(serialization.Encoding.PEM).decode()
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return CertificateAuthority(cert=cert_pem, key=key_pem)


def _public_key_bytes(public_key) -> bytes:
    return public_key.public_bytes(serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)


def load_certificate_authority(cert_pem: str, key_pem: str) -> CertificateAuthority | None:
    """Parse a stored pair; None when unparsable, expired or not a matching pair."""
    try:
        certificate = x509.load_pem_x509_certificate(cert_pem.encode())
        key = serialization.load_pem_private_key(key_pem.encode(), password=None)
    except (ValueError, TypeError):
        return None

    if certificate.not_valid_after_utc <= utc_now():
        return None
    if _public_key_bytes(certificate.public_key()) != _public_key_bytes(key.public_key()):
        logger.warning("Stored certificate was not issued for the stored key")
        return None
    return CertificateAuthority(cert=cert_pem, key=key_pem)


class CertificateManager:
    """Loads or generates the CA once per process.

    ``get()`` never waits: it raises until ``initialize()`` has finished writing
    both files, so callers cannot observe a half-written CA.
    """

    def __init__(self, directory: str):
        self.directory = directory
        self._ca: CertificateAuthority | None = None
        self._lock = asyncio.Lock()

    @property
    def cert_path(self) -> str:
        return os.path.join(self.directory, CERT_FILE_NAME)

    @property
    def key_path(self) -> str:
        return os.path.join(self.directory, KEY_FILE_NAME)

    def get(self) -> CertificateAuthority:
        if self._ca is None:
            raise CertificateAuthorityNotInitialized("The certificate authority has not been initialized")
        return self._ca

    async def initialize(self) -> CertificateAuthority:
        async with self._lock:
            if self._ca is not None:
                return self._ca
            self._ca = await asyncio.to_thread(self._load_or_create)
            return self._ca

    def _load_or_create(self) -> CertificateAuthority:
        if os.path.exists(self.cert_path) and os.path.exists(self.key_path):
            with open(self.cert_path) as f:
                cert_pem = f.read()
            with open(self.key_path) as f:
                key_pem = f.read()
            ca = load_certificate_authority(cert_pem, key_pem)
            if ca is not None:
                logger.info("Loaded certificate authority from %s", self.directory)
                return ca
            logger.warning("Stored certificate authority is invalid or expired; generating a new one")

        ca = generate_certificate_authority()
        os.makedirs(self.directory, exist_ok=True)
        for path, content in ((self.cert_path, ca.cert), (self.key_path, ca.key)):
            if os.path.exists(path):
                os.remove(path)
            with open(path, "w") as f:
                f.write(content)
        logger.info("Generated certificate authority in %s", self.directory)
        return ca
