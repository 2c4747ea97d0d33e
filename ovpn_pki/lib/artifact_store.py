"""Durable, role-local cache of certificates, keys and requests.

One cache root holds a subtree per role (``ca``, ``server``, ``clients``). The
whole tree is what the operator carries between machines, so every path here
is relative to the same root on every role.
"""

import json
import os
import shutil
from pathlib import Path

from .errors import MissingArtifactError
from .logging_config import LOGGER
from .models import CertificateMetadata, Role

REQUEST_SUFFIX = ".req"
CERT_SUFFIX = ".crt"
METADATA_SUFFIX = ".json"


class ArtifactStore:
    """Path conventions and file operations for the durable store."""

    def __init__(self, root: Path) -> None:
        """Initialize store rooted at the given cache directory.

        Args:
            root: Cache root shared by all roles
        """
        self.root = root

    def role_dir(self, role: Role) -> Path:
        return self.root / role.value

    @property
    def ca_cert_path(self) -> Path:
        return self.role_dir(Role.CA) / "pki" / "ca.crt"

    @property
    def crl_path(self) -> Path:
        return self.role_dir(Role.CA) / "pki" / "crl.pem"

    @property
    def tls_key_path(self) -> Path:
        return self.role_dir(Role.SERVER) / "openvpn" / "server" / "ta.key"

    def reqs_dir(self, role: Role) -> Path:
        return self.role_dir(role) / "pki" / "reqs"

    def issued_dir(self, role: Role) -> Path:
        return self.role_dir(role) / "pki" / "issued"

    def request_path(self, role: Role, name: str) -> Path:
        return self.reqs_dir(role) / f"{name}{REQUEST_SUFFIX}"

    def certificate_path(self, role: Role, name: str) -> Path:
        return self.issued_dir(role) / f"{name}{CERT_SUFFIX}"

    def metadata_path(self, role: Role, name: str) -> Path:
        return self.issued_dir(role) / f"{name}{METADATA_SUFFIX}"

    def list_requests(self, role: Role) -> list[Path]:
        """Return request files for a role, ordered by stem."""
        return _list_by_suffix(self.reqs_dir(role), REQUEST_SUFFIX)

    def list_certificates(self, role: Role, include_revoked: bool = False) -> list[Path]:
        """Return signed certificates for a role, ordered by stem.

        Args:
            role: Role subtree to list
            include_revoked: Also return certificates whose metadata says revoked

        Returns:
            Certificate paths sorted by filename stem
        """
        certificates = _list_by_suffix(self.issued_dir(role), CERT_SUFFIX)
        if include_revoked:
            return certificates
        return [path for path in certificates if not self.is_revoked(role, path.stem)]

    def require(self, path: Path, description: str) -> Path:
        """Return path if it exists, else raise MissingArtifactError naming it."""
        if not path.exists():
            raise MissingArtifactError(description, path)
        return path

    def store(self, source: Path, destination: Path) -> Path:
        """Copy an artifact into the store, creating parent directories."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)
        LOGGER.debug("Cached %s -> %s", source, destination)
        return destination

    def read_metadata(self, role: Role, name: str) -> CertificateMetadata | None:
        path = self.metadata_path(role, name)
        if not path.exists():
            return None
        return json.loads(path.read_text())

    def write_metadata(self, role: Role, name: str, metadata: CertificateMetadata) -> Path:
        path = self.metadata_path(role, name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(metadata, indent=2))
        return path

    def is_revoked(self, role: Role, name: str) -> bool:
        metadata = self.read_metadata(role, name)
        return metadata is not None and metadata.get("status") == "revoked"

    def mark_revoked(self, role: Role, name: str) -> None:
        """Flip the metadata record of a certificate to revoked, if one exists."""
        metadata = self.read_metadata(role, name)
        if metadata is None:
            LOGGER.warning("No metadata record for %s/%s; revocation not recorded", role.value, name)
            return
        metadata["status"] = "revoked"
        self.write_metadata(role, name, metadata)

    def reset(self, role: Role | None = None) -> Path:
        """Delete the whole cache root, or one role's subtree.

        Returns:
            The directory that was removed (or would have been, if absent)
        """
        target = self.root if role is None else self.role_dir(role)
        if target.exists():
            shutil.rmtree(target)
            LOGGER.info("Removed %s", target)
        else:
            LOGGER.info("Nothing to remove at %s", target)
        return target


def install_file(
    source: Path,
    destination: Path,
    mode: int,
    owner: str | None = None,
    group: str | None = None,
) -> Path:
    """Copy a file into a live configuration directory with given permissions.

    Args:
        source: File to copy
        destination: Target path; parent directories are created
        mode: Permission bits applied to the copy
        owner: User to own the copy (skipped when None)
        group: Group to own the copy (skipped when None)

    Returns:
        The destination path
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, destination)
    os.chmod(destination, mode)
    if owner is not None or group is not None:
        shutil.chown(destination, user=owner, group=group)
    LOGGER.info("Installed %s (mode %o)", destination, mode)
    return destination


def _list_by_suffix(directory: Path, suffix: str) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        (path for path in directory.iterdir() if path.is_file() and path.suffix == suffix),
        key=lambda path: path.stem,
    )
