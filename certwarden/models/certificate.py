"""
Certificate models for the certificate lifecycle reconciler.

Provides Pydantic models for domain groups, cached certificate material,
ACME account identities and the derived expiry decision.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DomainGroup(BaseModel):
    """
    Ordered set of hostnames that share one certificate.

    The first name is the domain root: it keys the stored certificate
    and is the primary ACME subject.
    """

    model_config = ConfigDict(frozen=True)

    domains: Tuple[str, ...] = Field(..., min_length=1, description="Ordered domain names, root first")

    @field_validator("domains")
    @classmethod
    def validate_domains(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """Normalize names and reject empty or repeated entries."""
        validated = []
        for name in v:
            name = name.strip().lower()
            if not name:
                raise ValueError("Domain names cannot be empty")
            if name in validated:
                raise ValueError(f"Duplicate domain in group: {name}")
            validated.append(name)
        if not validated:
            raise ValueError("Domain group cannot be empty")
        return tuple(validated)

    @classmethod
    def of(cls, *domains: str) -> "DomainGroup":
        return cls(domains=list(domains))

    @property
    def root(self) -> str:
        """Canonical domain root (first element)."""
        return self.domains[0]

    def __str__(self) -> str:
        return ",".join(self.domains)


class CertificateRecord(BaseModel):
    """
    Cached certificate material for one domain group.

    A record with either byte field empty is treated as absent.
    """

    model_config = ConfigDict(frozen=True)

    domain_root: str = Field(..., min_length=1, description="Domain root the record is stored under")
    certificate: bytes = Field(default=b"", description="PEM certificate bundle (leaf + chain)")
    private_key: bytes = Field(default=b"", description="PEM PKCS#8 private key")

    @classmethod
    def empty(cls, domain_root: str) -> "CertificateRecord":
        return cls(domain_root=domain_root)

    @property
    def is_valid(self) -> bool:
        """Both the certificate and the key are present."""
        return bool(self.certificate) and bool(self.private_key)


class CertificateSource(str, Enum):
    """Where the published certificate of a pass came from."""

    CACHED = "cached"
    RENEWED = "renewed"
    SELF_SIGNED = "self_signed"


class ExpiryDecision(BaseModel):
    """Renew-or-keep decision, computed fresh on every pass."""

    remaining_days: int = Field(default=0, description="Whole days until notAfter")
    should_renew: bool = Field(..., description="Whether the certificate must be replaced")
    not_after: Optional[datetime] = Field(None, description="Certificate expiry date")
    error: Optional[str] = Field(None, description="Decode error that forced renewal")


class Registration(BaseModel):
    """ACME account registration reference."""

    uri: str = Field(..., description="Registered account URL")
    contact: List[str] = Field(default_factory=list, description="Account contact URIs")
    terms_of_service_agreed: bool = Field(default=True, description="Whether terms of service were accepted")
    status: Optional[str] = Field(None, description="Account status reported by the CA")


class AccountIdentity(BaseModel):
    """
    ACME account identity, one per contact email.

    Shared by every domain group registered under the same email.
    """

    email: str = Field(..., description="Account contact email")
    private_key_pem: str = Field(..., description="Account private key (PKCS#8 PEM)")
    registration: Optional[Registration] = Field(None, description="Registration reference, once registered")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="Identity creation time"
    )


class StepError(BaseModel):
    """Error recorded by one reconciliation step."""

    step: str
    message: str


class ReconcileResult(BaseModel):
    """Outcome of one reconciliation pass for one domain group."""

    domain_root: str
    source: CertificateSource
    renewed: bool = False
    remaining_days: Optional[int] = None
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    errors: List[StepError] = Field(default_factory=list)

    @property
    def degraded(self) -> bool:
        """Serving a self-signed certificate."""
        return self.source == CertificateSource.SELF_SIGNED
