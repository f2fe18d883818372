"""
Pydantic models for the on-disk JSON configuration files.

The application file carries the contact email, CA directory and the
optional remote bucket; the domains file carries the domain groups.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.certificate import DomainGroup

LETSENCRYPT_PRODUCTION_URL = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"


class S3Config(BaseModel):
    """Remote bucket settings. An empty bucket name selects local storage."""

    model_config = ConfigDict(populate_by_name=True)

    bucket_name: str = Field(default="", alias="bucketName")
    endpoint: str = Field(default="", description="Custom S3-compatible endpoint URL")
    region: str = Field(default="us-east-1")

    @property
    def enabled(self) -> bool:
        return bool(self.bucket_name.strip())


class AppConfig(BaseModel):
    """Application settings file (config.json)."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "email": "admin@example.com",
                "caAuthority": LETSENCRYPT_STAGING_URL,
                "s3": {"bucketName": "", "endpoint": "", "region": "us-east-1"},
            }
        },
    )

    email: str = Field(..., min_length=3, description="ACME account contact email")
    ca_authority: str = Field(..., min_length=1, alias="caAuthority", description="ACME directory URL")
    local_cert_dir: Optional[str] = Field(
        None, alias="localCertDir", description="Directory the TLS terminator reads certificates from"
    )
    s3: S3Config = Field(default_factory=S3Config)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError(f"Invalid contact email: {v}")
        return v

    @field_validator("ca_authority")
    @classmethod
    def validate_ca_authority(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("https://", "http://")):
            raise ValueError(f"CA authority must be an http(s) URL: {v}")
        return v


class DomainsConfig(BaseModel):
    """Domains file (domains.json): ordered list of ordered domain lists."""

    domains: List[List[str]] = Field(default_factory=list)

    @field_validator("domains")
    @classmethod
    def validate_groups(cls, v: List[List[str]]) -> List[List[str]]:
        # Validate eagerly so a malformed reload is rejected as a whole
        return [list(DomainGroup(domains=group).domains) for group in v]

    @property
    def groups(self) -> List[DomainGroup]:
        return [DomainGroup(domains=group) for group in self.domains]
