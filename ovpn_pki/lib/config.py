"""Workflow configuration and the context threaded through every operation."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import PrivilegeError

if TYPE_CHECKING:
    from .artifact_store import ArtifactStore
    from .operator import Operator
    from .toolkit import PKIToolkit

ENV_PREFIX = "OVPN_PKI_"

_SAMPLE_CONFIG_DIR = Path("/usr/share/doc/openvpn/examples/sample-config-files")


@dataclass
class WorkflowConfig:
    """Filesystem locations, external programs and defaults for one machine."""

    cache_root: Path = field(default_factory=lambda: Path.home() / ".ovpn-pki")
    easyrsa_dir: Path = Path("/etc/openvpn/easy-rsa")
    openvpn_dir: Path = Path("/etc/openvpn")
    easyrsa_bin: str = "/usr/share/easy-rsa/easyrsa"
    openssl_bin: str = "openssl"
    openvpn_bin: str = "openvpn"
    systemctl_bin: str = "systemctl"
    service_name: str = "openvpn-server@server"
    server_template: Path = _SAMPLE_CONFIG_DIR / "server.conf"
    client_template: Path = _SAMPLE_CONFIG_DIR / "client.conf"
    ca_common_name: str = "OpenVPN CA"
    server_name_default: str = "servername"
    client_name_default: str = "clientname"
    key_size: int = 2048
    default_port: int = 1194
    file_owner: str | None = "root"
    file_group: str | None = "root"
    require_root: bool = True

    @property
    def pki_dir(self) -> Path:
        return self.easyrsa_dir / "pki"

    @property
    def server_dir(self) -> Path:
        return self.openvpn_dir / "server"

    @property
    def client_dir(self) -> Path:
        return self.openvpn_dir / "client"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "WorkflowConfig":
        """Build configuration, overriding defaults with OVPN_PKI_* variables.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            WorkflowConfig with every matching field overridden

        Raises:
            ValueError: If an integer or boolean variable cannot be parsed
        """
        environ = dict(os.environ) if environ is None else environ
        overrides: dict[str, object] = {}
        defaults = cls()

        for config_field in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{config_field.name.upper()}")
            if raw is None:
                continue
            current = getattr(defaults, config_field.name)
            if isinstance(current, bool):
                if raw.lower() not in ("1", "0", "true", "false", "yes", "no"):
                    raise ValueError(f"{ENV_PREFIX}{config_field.name.upper()} must be a boolean: {raw!r}")
                overrides[config_field.name] = raw.lower() in ("1", "true", "yes")
            elif isinstance(current, int):
                overrides[config_field.name] = int(raw)
            elif isinstance(current, Path):
                overrides[config_field.name] = Path(raw)
            else:
                overrides[config_field.name] = raw or None

        return cls(**overrides)  # type: ignore[arg-type]


@dataclass
class WorkflowContext:
    """Everything an operation needs, passed explicitly instead of held globally."""

    config: WorkflowConfig
    store: "ArtifactStore"
    toolkit: "PKIToolkit"
    operator: "Operator"
    force: bool = False

    def require_privileges(self) -> None:
        """Raise PrivilegeError unless running as root (or the check is disabled)."""
        if self.config.require_root and os.geteuid() != 0:
            raise PrivilegeError("this operation must be run as root")
