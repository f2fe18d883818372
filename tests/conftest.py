"""
Global test fixtures.

Mints real certificates with cryptography and replaces the ACME CA, the
challenge responder and the S3 bucket with in-memory fakes.
"""

from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from config import ReconcilerConfig
from core.acme_service import ACMEError, IssuedCertificate
from core.storage.blob_store import BlobStoreError
from models.certificate import CertificateRecord, Registration
from models.config import LETSENCRYPT_STAGING_URL


def mint_certificate(domains, not_after: datetime, not_before: datetime = None) -> tuple[bytes, bytes]:
    """Self-signed (cert PEM, PKCS#8 key PEM) with the given validity end."""
    if isinstance(domains, str):
        domains = [domains]
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    not_before = not_before or min(datetime.now(timezone.utc), not_after) - timedelta(days=1)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
        .sign(private_key, hashes.SHA256())
    )
    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert.public_bytes(serialization.Encoding.PEM), key_pem


@pytest.fixture
def make_record():
    """Factory for CertificateRecords expiring in a given number of days."""

    def _make(domain_root: str = "example.com", days: float = 90, domains=None) -> CertificateRecord:
        not_after = datetime.now(timezone.utc) + timedelta(days=days)
        cert_pem, key_pem = mint_certificate(domains or [domain_root], not_after)
        return CertificateRecord(domain_root=domain_root, certificate=cert_pem, private_key=key_pem)

    return _make


@pytest.fixture
def reconciler_config(tmp_path) -> ReconcilerConfig:
    return ReconcilerConfig(
        contact_email="admin@example.com",
        ca_authority=LETSENCRYPT_STAGING_URL,
        local_cert_dir=tmp_path / "certs",
        config_dir=tmp_path / "config",
        renewal_window_days=60,
        http_challenge_port=5002,
        service_name="svc",
    )


class InMemoryBlobStore:
    """Dict-backed blob store; keys in fail_put/fail_get raise BlobStoreError."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.fail_put: set[str] = set()
        self.fail_get: set[str] = set()
        self.puts: list[str] = []

    def put(self, key: str, data: bytes) -> None:
        if key in self.fail_put:
            raise BlobStoreError(f"simulated upload failure for {key}", key=key)
        self.puts.append(key)
        self.objects[key] = bytes(data)

    def get(self, key: str) -> bytes | None:
        if key in self.fail_get:
            raise BlobStoreError(f"simulated download failure for {key}", key=key)
        return self.objects.get(key)


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


class FakeResponder:
    """Stands in for ChallengeResponder without binding a port."""

    instances: list["FakeResponder"] = []

    def __init__(self, port: int = 5002, host: str = "0.0.0.0"):
        self.port = port
        self.tokens: dict[str, str] = {}
        self.started = False
        self.stopped = False
        FakeResponder.instances.append(self)

    def add_token(self, token, key_authorization: str) -> None:
        self.tokens[token] = key_authorization

    def remove_token(self, token) -> None:
        self.tokens.pop(token, None)

    async def __aenter__(self):
        self.started = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.stopped = True


class FakeCA:
    """
    In-memory ACME CA.

    Called as an issuer factory: FakeCA()(ca_url, account_key, responder).
    """

    def __init__(self, validity_days: int = 90):
        self.validity_days = validity_days
        self.fail_with: Exception | None = None
        self.registrations: list[str] = []
        self.used_registrations: list[Registration] = []
        self.orders: list[list[str]] = []
        self.account_keys: list = []

    def __call__(self, ca_url, account_key, responder):
        self.account_keys.append(account_key)
        return _FakeIssuer(self, ca_url, responder)


class _FakeIssuer:
    def __init__(self, ca: FakeCA, ca_url: str, responder):
        self.ca = ca
        self.ca_url = ca_url
        self.responder = responder

    async def register(self, email: str) -> Registration:
        self.ca.registrations.append(email)
        return Registration(uri=f"https://ca.test/acct/{len(self.ca.registrations)}", contact=[f"mailto:{email}"])

    async def use_registration(self, registration: Registration) -> None:
        self.ca.used_registrations.append(registration)

    async def obtain_certificate(self, domains: list[str], timeout: int = 300) -> IssuedCertificate:
        if self.ca.fail_with is not None:
            raise self.ca.fail_with
        self.ca.orders.append(list(domains))
        not_after = datetime.now(timezone.utc) + timedelta(days=self.ca.validity_days)
        cert_pem, key_pem = mint_certificate(domains, not_after)
        return IssuedCertificate(certificate=cert_pem, private_key=key_pem, chain=b"")


@pytest.fixture
def fake_ca() -> FakeCA:
    return FakeCA()


@pytest.fixture
def failing_ca() -> FakeCA:
    ca = FakeCA()
    ca.fail_with = ACMEError("connection refused", suggestion="Check network access")
    return ca


@pytest.fixture
def fake_responder():
    FakeResponder.instances.clear()
    return FakeResponder
