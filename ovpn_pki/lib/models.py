"""Roles, lifecycle states and result models for PKI workflow operations."""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Literal, TypedDict


class Role(str, Enum):
    """Subtree of the durable store owned by each machine role."""

    CA = "ca"
    SERVER = "server"
    CLIENTS = "clients"


class Target(str, Enum):
    """Distribution target of pass-back, profile and revocation operations."""

    SERVER = "server"
    CLIENT = "client"

    @property
    def role(self) -> Role:
        return Role.SERVER if self is Target.SERVER else Role.CLIENTS


class ServerStep(IntEnum):
    """Independently selectable server setup sub-steps."""

    CA_CERT = 1
    REQUEST = 2
    DH_PARAMS = 3
    TLS_KEY = 4


ServerStepSelection = ServerStep | Literal["all"]


class IdentityState(str, Enum):
    """Lifecycle of one logical identity, ordered as the CA sees it."""

    UNREQUESTED = "unrequested"
    REQUESTED = "requested"
    IMPORTED = "imported"
    SIGNED = "signed"
    DISTRIBUTED = "distributed"
    REVOKED = "revoked"


class CertificateMetadata(TypedDict):
    """Sidecar record stored next to each signed certificate."""

    serialNumber: str
    commonName: str
    notBefore: str
    expiry: str
    issuedAt: str
    status: Literal["active", "revoked"]


@dataclass
class SetupCAResult:
    """Result from CA setup."""

    pki_initialized: bool
    ca_built: bool
    ca_cert_path: Path


@dataclass
class ServerSetupResult:
    """Result from server artifact setup.

    Lists which sub-steps ran and which were skipped because their artifact
    already existed.
    """

    completed: list[ServerStep] = field(default_factory=list)
    skipped: list[ServerStep] = field(default_factory=list)
    request_name: str | None = None
    written: list[Path] = field(default_factory=list)


@dataclass
class RequestResult:
    """Result from generating a keypair and certificate request."""

    name: str
    generated: bool
    request_path: Path
    key_path: Path


@dataclass
class SignResult:
    """Result from signing pending requests on the CA.

    Contains the stems imported and signed during this run and the
    certificates copied into the durable store.
    """

    imported: list[str] = field(default_factory=list)
    signed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    certificates: list[Path] = field(default_factory=list)


@dataclass
class RevokeResult:
    """Result from revoking a certificate."""

    role: Role
    name: str
    crl_path: Path


@dataclass
class PassBackResult:
    """Result from installing signed artifacts on the originating role."""

    target: Target
    name: str
    installed: list[Path] = field(default_factory=list)


@dataclass
class ProfileResult:
    """Result from rendering an OpenVPN configuration profile."""

    target: Target
    name: str
    path: Path
    remote: str | None = None


@dataclass
class AlertResult:
    """Result from applying a CRL to the server."""

    crl_path: Path
    config_path: Path
    directive_added: bool
    restarted: bool


@dataclass
class IdentityStatus:
    """One row of the lifecycle report."""

    role: Role
    name: str
    state: IdentityState
