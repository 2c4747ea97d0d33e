"""Adapter for the external PKI, crypto and service-control programs.

All programs are reached through a single ``CommandRunner.invoke`` call that
takes an argument vector (never a shell string) and returns the captured output
and exit status. ``PKIToolkit`` turns non-zero exits into ``ToolkitError``.
"""

import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import WorkflowConfig
from .errors import MissingProgramError, ToolkitError
from .logging_config import LOGGER


@dataclass(frozen=True)
class CommandResult:
    """Captured output and exit status of one external command."""

    args: tuple[str, ...]
    output: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    """Capability to run an external program synchronously."""

    def invoke(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult: ...

    def which(self, command: str) -> str | None: ...


class SubprocessRunner:
    """CommandRunner backed by subprocess, merging stdout and stderr."""

    def invoke(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        argv = (command, *args)
        merged_env = {**os.environ, **env} if env else None
        try:
            completed = subprocess.run(
                argv,
                cwd=cwd,
                env=merged_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise MissingProgramError(command) from e
        return CommandResult(args=argv, output=completed.stdout or "", returncode=completed.returncode)

    def which(self, command: str) -> str | None:
        return shutil.which(command)


class PKIToolkit:
    """Easy-RSA, OpenSSL, OpenVPN and systemctl operations used by the workflow."""

    def __init__(self, runner: CommandRunner, config: WorkflowConfig) -> None:
        """Initialize toolkit.

        Args:
            runner: Executes the external programs
            config: Supplies program names and the working PKI location
        """
        self.runner = runner
        self.config = config

    @property
    def pki_dir(self) -> Path:
        return self.config.pki_dir

    @property
    def ca_cert_path(self) -> Path:
        return self.pki_dir / "ca.crt"

    @property
    def ca_key_path(self) -> Path:
        return self.pki_dir / "private" / "ca.key"

    @property
    def crl_path(self) -> Path:
        return self.pki_dir / "crl.pem"

    def request_path(self, name: str) -> Path:
        return self.pki_dir / "reqs" / f"{name}.req"

    def issued_path(self, name: str) -> Path:
        return self.pki_dir / "issued" / f"{name}.crt"

    def private_key_path(self, name: str) -> Path:
        return self.pki_dir / "private" / f"{name}.key"

    def ensure_available(self, command: str) -> None:
        """Raise MissingProgramError if command cannot be found."""
        if self.runner.which(command) is None:
            raise MissingProgramError(command)

    def _run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        LOGGER.debug("Running %s %s", command, " ".join(args))
        result = self.runner.invoke(command, args, cwd=cwd, env=env)
        if not result.ok:
            raise ToolkitError(result.args, result.returncode, result.output)
        return result

    def _easyrsa(self, *args: str) -> CommandResult:
        self.config.easyrsa_dir.mkdir(parents=True, exist_ok=True)
        return self._run(
            self.config.easyrsa_bin,
            ["--batch", *args],
            cwd=self.config.easyrsa_dir,
            env={"EASYRSA_PKI": str(self.pki_dir), "EASYRSA_BATCH": "1"},
        )

    def init_pki(self) -> None:
        self._easyrsa("init-pki")

    def build_ca(self) -> None:
        self._easyrsa(f"--req-cn={self.config.ca_common_name}", "build-ca", "nopass")

    def gen_req(self, name: str) -> None:
        self._easyrsa(f"--req-cn={name}", "gen-req", name, "nopass")

    def import_req(self, request: Path, name: str) -> None:
        self._easyrsa("import-req", str(request), name)

    def sign_req(self, kind: str, name: str) -> None:
        if kind not in ("server", "client"):
            raise ValueError(f"unsupported certificate kind: {kind}")
        self._easyrsa("sign-req", kind, name)

    def revoke(self, name: str) -> None:
        self._easyrsa("revoke", name)

    def gen_crl(self) -> None:
        self._easyrsa("gen-crl")

    def gen_dh(self, bits: int, output: Path) -> None:
        """Generate Diffie-Hellman parameters; slow for large bit lengths."""
        output.parent.mkdir(parents=True, exist_ok=True)
        self._run(self.config.openssl_bin, ["dhparam", "-out", str(output), str(bits)])

    def gen_tls_key(self, output: Path) -> None:
        output.parent.mkdir(parents=True, exist_ok=True)
        self._run(self.config.openvpn_bin, ["--genkey", "secret", str(output)])

    def describe(self, path: Path) -> str:
        """Return OpenSSL's text dump of a certificate or request."""
        kind = "req" if path.suffix == ".req" else "x509"
        return self._run(self.config.openssl_bin, [kind, "-noout", "-text", "-in", str(path)]).output

    def restart_service(self, service: str) -> bool:
        """Ask the service manager to restart a unit.

        Failures are logged and reported through the return value; they are not
        raised and not retried.
        """
        try:
            result = self.runner.invoke(self.config.systemctl_bin, ["restart", service])
        except MissingProgramError:
            LOGGER.error("Cannot restart %s: %s not found", service, self.config.systemctl_bin)
            return False
        if not result.ok:
            LOGGER.error("Restart of %s failed (exit %d): %s", service, result.returncode, result.output.strip())
            return False
        LOGGER.info("Restarted %s", service)
        return True
