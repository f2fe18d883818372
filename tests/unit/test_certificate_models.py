"""
Unit tests for certificate and configuration models.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from models.certificate import (
    AccountIdentity,
    CertificateRecord,
    CertificateSource,
    DomainGroup,
    ReconcileResult,
    StepError,
)
from models.config import AppConfig, DomainsConfig, S3Config


class TestDomainGroup:
    def test_root_is_first(self):
        group = DomainGroup.of("example.com", "www.example.com")
        assert group.root == "example.com"
        assert str(group) == "example.com,www.example.com"

    def test_normalizes(self):
        assert DomainGroup.of(" Example.COM ").domains == ("example.com",)

    def test_rejects_empty(self):
        with pytest.raises(ValidationError):
            DomainGroup(domains=[])

    def test_rejects_blank_name(self):
        with pytest.raises(ValidationError):
            DomainGroup.of("example.com", " ")

    def test_rejects_duplicates(self):
        with pytest.raises(ValidationError):
            DomainGroup.of("example.com", "EXAMPLE.com")

    def test_frozen(self):
        group = DomainGroup.of("example.com")
        with pytest.raises(ValidationError):
            group.domains = ["other.com"]

    def test_domains_immutable(self):
        group = DomainGroup(domains=["example.com", "www.example.com"])
        assert group.domains == ("example.com", "www.example.com")
        with pytest.raises(AttributeError):
            group.domains.append("other.com")

    def test_hashable(self):
        assert len({DomainGroup.of("example.com"), DomainGroup.of("Example.com")}) == 1


class TestCertificateRecord:
    def test_empty_is_invalid(self):
        assert CertificateRecord.empty("example.com").is_valid is False

    def test_missing_key_is_invalid(self):
        assert CertificateRecord(domain_root="example.com", certificate=b"cert").is_valid is False

    def test_valid(self):
        assert CertificateRecord(domain_root="example.com", certificate=b"c", private_key=b"k").is_valid


class TestReconcileResult:
    def test_degraded_only_for_self_signed(self):
        assert ReconcileResult(domain_root="a.com", source=CertificateSource.SELF_SIGNED).degraded
        assert not ReconcileResult(domain_root="a.com", source=CertificateSource.RENEWED).degraded

    def test_errors(self):
        result = ReconcileResult(
            domain_root="a.com", source=CertificateSource.CACHED, errors=[StepError(step="renew", message="boom")]
        )
        assert result.errors[0].step == "renew"


class TestAccountIdentity:
    def test_registration_optional(self):
        identity = AccountIdentity(email="ops@a.com", private_key_pem="pem")
        assert identity.registration is None
        assert identity.created_at is not None

    def test_created_at_is_timezone_aware(self):
        identity = AccountIdentity(email="ops@a.com", private_key_pem="pem")
        assert identity.created_at.tzinfo is not None
        assert identity.created_at.utcoffset() == timedelta(0)


class TestConfigModels:
    def test_s3_disabled_by_default(self):
        assert S3Config().enabled is False

    def test_app_config_requires_http_url(self):
        with pytest.raises(ValidationError):
            AppConfig(email="ops@a.com", caAuthority="ftp://ca.test")

    def test_app_config_requires_email(self):
        with pytest.raises(ValidationError):
            AppConfig(email="ops.a.com", caAuthority="https://ca.test/dir")

    def test_domains_config_groups(self):
        config = DomainsConfig(domains=[["a.com"], ["b.com", "www.b.com"]])
        assert [group.root for group in config.groups] == ["a.com", "b.com"]
