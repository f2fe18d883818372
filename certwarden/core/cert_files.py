"""
Local certificate directory.

One subdirectory per domain root holding cert.pem and privkey.pem,
read by the external TLS terminator.
"""

import logging
import shutil
from pathlib import Path

from models.certificate import CertificateRecord

logger = logging.getLogger(__name__)

CERT_FILENAME = "cert.pem"
KEY_FILENAME = "privkey.pem"


class LocalCertificateDirectory:
    """Materializes certificate records under a root certificate directory."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def cert_dir(self, domain_root: str) -> Path:
        return self.base_dir / domain_root

    def paths(self, domain_root: str) -> tuple[Path, Path]:
        """(certificate path, private key path) for a domain root."""
        cert_dir = self.cert_dir(domain_root)
        return cert_dir / CERT_FILENAME, cert_dir / KEY_FILENAME

    def read(self, domain_root: str) -> CertificateRecord | None:
        """Read the published record, or None when either file is missing or empty."""
        cert_path, key_path = self.paths(domain_root)
        try:
            cert_pem = cert_path.read_bytes()
            key_pem = key_path.read_bytes()
        except FileNotFoundError:
            return None
        if not cert_pem or not key_pem:
            return None
        return CertificateRecord(domain_root=domain_root, certificate=cert_pem, private_key=key_pem)

    def remove(self, domain_root: str) -> None:
        """Remove any previously materialized directory (best effort)."""
        cert_dir = self.cert_dir(domain_root)
        try:
            shutil.rmtree(cert_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug(f"Failed to remove {cert_dir}: {e}")

    def write(self, record: CertificateRecord) -> tuple[Path, Path]:
        """
        Write a record to disk.

        Raises OSError when the directory or files cannot be written.
        """
        cert_dir = self.cert_dir(record.domain_root)
        cert_path, key_path = self.paths(record.domain_root)

        logger.debug(f"Writing certificate for {record.domain_root} to {cert_dir}")
        cert_dir.mkdir(parents=True, exist_ok=True)
        cert_path.write_bytes(record.certificate)
        key_path.write_bytes(record.private_key)
        # Restrict permissions on private key
        key_path.chmod(0o600)

        logger.debug(f"Certificate written to disk: cert={cert_path} key={key_path}")
        return cert_path, key_path

    def replace(self, record: CertificateRecord) -> tuple[Path, Path]:
        """Remove then recreate the directory for the record's domain root."""
        self.remove(record.domain_root)
        return self.write(record)
