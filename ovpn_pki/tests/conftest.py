"""Test fixtures for ovpn_pki tests.

``FakeToolchain`` stands in for easyrsa, openssl, openvpn and systemctl. It
writes the same files the real programs write, with real keys, requests,
certificates and CRLs built by ``cryptography``, so metadata extraction and the
cross-machine workflow run end to end without the external programs.
"""

import shutil
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from ovpn_pki.lib.artifact_store import ArtifactStore
from ovpn_pki.lib.config import WorkflowConfig, WorkflowContext
from ovpn_pki.lib.toolkit import CommandResult, PKIToolkit
from ovpn_pki.lib.workflow import setup_ca, setup_client_artifact, setup_server_artifact, sign_requests

SERVER_TEMPLATE = """\
# Sample OpenVPN 2.x config file for a multi-client server.
port 1194
proto udp
dev tun

# SSL/TLS root certificate (ca), certificate
# (cert), and private key (key).
ca ca.crt
cert server.crt
key server.key  # This file should be kept secret

# Diffie hellman parameters.
dh dh2048.pem

server 10.8.0.0 255.255.255.0
keepalive 10 120

# For extra security beyond that provided
# by SSL/TLS, create an "HMAC firewall"
tls-auth ta.key 0 # This file is secret
cipher AES-256-CBC

# It's a good idea to reduce the OpenVPN
# daemon's privileges after initialization.
;user nobody
;group nogroup

persist-key
persist-tun
verb 3
"""

CLIENT_TEMPLATE = """\
# Sample client-side OpenVPN 2.x config file.
client
dev tun
proto udp

# The hostname/IP and port of the server.
remote my-server-1 1194
;remote my-server-2 1194

resolv-retry infinite
nobind

# Downgrade privileges after initialization (non-Windows only)
;user nobody
;group nogroup

persist-key
persist-tun

ca ca.crt
cert client.crt
key client.key

remote-cert-tls server

# If a tls-auth key is used on the server
# then every client must also have the key.
;tls-auth ta.key 1

cipher AES-256-CBC
verb 3
"""

TLS_KEY = """\
#
# 2048 bit OpenVPN static key
#
-----BEGIN OpenVPN Static key V1-----
00112233445566778899aabbccddeeff
-----END OpenVPN Static key V1-----
"""


def _key_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _subject(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _load_pem_certificate(data: bytes) -> x509.Certificate:
    return x509.load_pem_x509_certificate(data[data.find(b"-----BEGIN CERTIFICATE-----") :])


def _describe_name(name: x509.Name) -> str:
    return ", ".join(f"{attribute.rfc4514_attribute_name} = {attribute.value}" for attribute in name)


@dataclass
class Invocation:
    """One recorded external command."""

    command: str
    args: tuple[str, ...]
    cwd: Path | None
    env: dict[str, str]

    @property
    def program(self) -> str:
        return Path(self.command).name


@dataclass
class FakeToolchain:
    """CommandRunner emulating easyrsa, openssl, openvpn and systemctl."""

    calls: list[Invocation] = field(default_factory=list)
    missing: set[str] = field(default_factory=set)
    failures: dict[str, int] = field(default_factory=dict)
    restart_returncode: int = 0
    revoked_serials: dict[Path, list[int]] = field(default_factory=dict)

    def which(self, command: str) -> str | None:
        if Path(command).name in self.missing:
            return None
        return f"/usr/bin/{Path(command).name}"

    def invoke(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        invocation = Invocation(command, tuple(args), cwd, dict(env or {}))
        self.calls.append(invocation)
        handlers: dict[str, Callable[[Invocation], CommandResult]] = {
            "easyrsa": self._easyrsa,
            "openssl": self._openssl,
            "openvpn": self._openvpn,
            "systemctl": self._systemctl,
        }
        return handlers[invocation.program](invocation)

    def calls_for(self, subcommand: str) -> list[Invocation]:
        return [call for call in self.calls if subcommand in call.args]

    @staticmethod
    def _result(invocation: Invocation, returncode: int = 0, output: str = "") -> CommandResult:
        return CommandResult(args=(invocation.command, *invocation.args), output=output, returncode=returncode)

    def _easyrsa(self, invocation: Invocation) -> CommandResult:
        pki = Path(invocation.env["EASYRSA_PKI"])
        options = [arg for arg in invocation.args if arg.startswith("--")]
        positional = [arg for arg in invocation.args if not arg.startswith("--")]
        req_cn = next((opt.split("=", 1)[1] for opt in options if opt.startswith("--req-cn=")), None)
        subcommand, *rest = positional

        if subcommand in self.failures:
            return self._result(invocation, self.failures[subcommand], f"Easy-RSA error: {subcommand} failed")

        if subcommand == "init-pki":
            if pki.exists():
                shutil.rmtree(pki)
            for sub in ("private", "reqs", "issued", "revoked"):
                (pki / sub).mkdir(parents=True)

        elif subcommand == "build-ca":
            key = ec.generate_private_key(ec.SECP256R1())
            subject = _subject(req_cn or "Easy-RSA CA")
            now = datetime.now(UTC)
            cert = (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(subject)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now)
                .not_valid_after(now + timedelta(days=3650))
                .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
                .sign(key, hashes.SHA256())
            )
            (pki / "private" / "ca.key").write_bytes(_key_pem(key))
            (pki / "ca.crt").write_bytes(cert.public_bytes(serialization.Encoding.PEM))

        elif subcommand == "gen-req":
            name = rest[0]
            key = ec.generate_private_key(ec.SECP256R1())
            csr = x509.CertificateSigningRequestBuilder().subject_name(_subject(req_cn or name)).sign(key, hashes.SHA256())
            (pki / "private" / f"{name}.key").write_bytes(_key_pem(key))
            (pki / "reqs" / f"{name}.req").write_bytes(csr.public_bytes(serialization.Encoding.PEM))

        elif subcommand == "import-req":
            source, name = rest
            destination = pki / "reqs" / f"{name}.req"
            if destination.exists():
                return self._result(invocation, 1, "Unable to import the request: file already exists")
            shutil.copyfile(source, destination)

        elif subcommand == "sign-req":
            kind, name = rest
            request = pki / "reqs" / f"{name}.req"
            if not request.exists():
                return self._result(invocation, 1, f"No request found for {name}")
            csr = x509.load_pem_x509_csr(request.read_bytes())
            ca_key = serialization.load_pem_private_key((pki / "private" / "ca.key").read_bytes(), password=None)
            ca_cert = _load_pem_certificate((pki / "ca.crt").read_bytes())
            now = datetime.now(UTC)
            cert = (
                x509.CertificateBuilder()
                .subject_name(csr.subject)
                .issuer_name(ca_cert.subject)
                .public_key(csr.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now)
                .not_valid_after(now + timedelta(days=825))
                .sign(ca_key, hashes.SHA256())
            )
            preamble = f"Certificate:\n    Data:\n        Subject: {_describe_name(cert.subject)}\n    ({kind})\n"
            (pki / "issued" / f"{name}.crt").write_bytes(
                preamble.encode() + cert.public_bytes(serialization.Encoding.PEM)
            )

        elif subcommand == "revoke":
            name = rest[0]
            issued = pki / "issued" / f"{name}.crt"
            if not issued.exists():
                return self._result(invocation, 1, f"Unable to revoke as no certificate was found: {issued}")
            cert = _load_pem_certificate(issued.read_bytes())
            self.revoked_serials.setdefault(pki, []).append(cert.serial_number)
            shutil.move(issued, pki / "revoked" / f"{name}.crt")

        elif subcommand == "gen-crl":
            ca_key = serialization.load_pem_private_key((pki / "private" / "ca.key").read_bytes(), password=None)
            ca_cert = _load_pem_certificate((pki / "ca.crt").read_bytes())
            now = datetime.now(UTC)
            builder = (
                x509.CertificateRevocationListBuilder()
                .issuer_name(ca_cert.subject)
                .last_update(now)
                .next_update(now + timedelta(days=180))
            )
            for serial in self.revoked_serials.get(pki, []):
                builder = builder.add_revoked_certificate(
                    x509.RevokedCertificateBuilder().serial_number(serial).revocation_date(now).build()
                )
            crl = builder.sign(ca_key, hashes.SHA256())
            (pki / "crl.pem").write_bytes(crl.public_bytes(serialization.Encoding.PEM))

        else:
            return self._result(invocation, 1, f"Unknown command '{subcommand}'")

        return self._result(invocation)

    def _openssl(self, invocation: Invocation) -> CommandResult:
        kind, *rest = invocation.args
        if kind in self.failures:
            return self._result(invocation, self.failures[kind], f"openssl {kind} failed")

        if kind == "dhparam":
            output, bits = Path(rest[1]), rest[2]
            output.write_text(f"-----BEGIN DH PARAMETERS-----\n{bits}\n-----END DH PARAMETERS-----\n")
            return self._result(invocation)

        data = Path(rest[-1]).read_bytes()
        if kind == "req":
            subject = x509.load_pem_x509_csr(data).subject
            header = "Certificate Request:"
        else:
            subject = _load_pem_certificate(data).subject
            header = "Certificate:"
        text = (
            f"{header}\n    Data:\n        Version: 3 (0x2)\n"
            f"        Subject: {_describe_name(subject)}\n"
            "        Subject Public Key Info:\n            Public Key Algorithm: id-ecPublicKey\n"
        )
        return self._result(invocation, output=text)

    def _openvpn(self, invocation: Invocation) -> CommandResult:
        Path(invocation.args[-1]).write_text(TLS_KEY)
        return self._result(invocation)

    def _systemctl(self, invocation: Invocation) -> CommandResult:
        output = "" if self.restart_returncode == 0 else "Failed to restart unit"
        return self._result(invocation, self.restart_returncode, output)


class ScriptedOperator:
    """Operator answering from prepared scripts instead of the terminal."""

    def __init__(
        self,
        confirm: bool = True,
        answers: Sequence[str] = (),
        choices: Sequence[str] = (),
    ) -> None:
        self.confirm_answer = confirm
        self.answers = list(answers)
        self.choices = list(choices)
        self.questions: list[str] = []

    def confirm(self, question: str) -> bool:
        self.questions.append(question)
        return self.confirm_answer

    def ask(self, question: str, default: str) -> str:
        self.questions.append(question)
        return self.answers.pop(0) if self.answers else default

    def choose(self, question: str, candidates: Sequence[str]) -> str:
        self.questions.append(question)
        if not self.choices:
            raise AssertionError(f"unexpected choice prompt: {question} {list(candidates)}")
        choice = self.choices.pop(0)
        assert choice in candidates
        return choice


@pytest.fixture
def toolchain() -> FakeToolchain:
    """Return a fresh fake toolchain recording every invocation."""
    return FakeToolchain()


@pytest.fixture
def templates(tmp_path: Path) -> tuple[Path, Path]:
    """Write sample server and client templates and return their paths."""
    directory = tmp_path / "sample-config-files"
    directory.mkdir()
    server = directory / "server.conf"
    client = directory / "client.conf"
    server.write_text(SERVER_TEMPLATE)
    client.write_text(CLIENT_TEMPLATE)
    return server, client


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    """Return the durable store root shared by all simulated machines."""
    return tmp_path / "cache"


@pytest.fixture
def machine_config(tmp_path: Path, cache_root: Path, templates: tuple[Path, Path]) -> Callable[[str], WorkflowConfig]:
    """Return a factory for per-machine configuration sharing one cache root."""

    def factory(machine: str) -> WorkflowConfig:
        server_template, client_template = templates
        return WorkflowConfig(
            cache_root=cache_root,
            easyrsa_dir=tmp_path / machine / "easy-rsa",
            openvpn_dir=tmp_path / machine / "openvpn",
            easyrsa_bin="easyrsa",
            server_template=server_template,
            client_template=client_template,
            file_owner=None,
            file_group=None,
            require_root=False,
        )

    return factory


@pytest.fixture
def make_context(
    machine_config: Callable[[str], WorkflowConfig], toolchain: FakeToolchain
) -> Callable[..., WorkflowContext]:
    """Return a factory building a WorkflowContext for a simulated machine."""

    def factory(machine: str, operator: ScriptedOperator | None = None, force: bool = False) -> WorkflowContext:
        config = machine_config(machine)
        return WorkflowContext(
            config=config,
            store=ArtifactStore(config.cache_root),
            toolkit=PKIToolkit(toolchain, config),
            operator=operator or ScriptedOperator(),
            force=force,
        )

    return factory


@pytest.fixture
def ca_ctx(make_context: Callable[..., WorkflowContext]) -> WorkflowContext:
    """Context for the CA machine."""
    return make_context("ca")


@pytest.fixture
def server_ctx(make_context: Callable[..., WorkflowContext]) -> WorkflowContext:
    """Context for the VPN server machine."""
    return make_context("server")


@pytest.fixture
def client_ctx(make_context: Callable[..., WorkflowContext]) -> WorkflowContext:
    """Context for a VPN client machine."""
    return make_context("client")


@pytest.fixture
def signed_deployment(
    ca_ctx: WorkflowContext,
    server_ctx: WorkflowContext,
    client_ctx: WorkflowContext,
) -> tuple[WorkflowContext, WorkflowContext, WorkflowContext]:
    """Run CA setup, server setup, one client request (alice) and signing.

    Returns:
        (ca_ctx, server_ctx, client_ctx)
    """
    setup_ca(ca_ctx)
    setup_server_artifact(server_ctx, "all")
    setup_client_artifact(client_ctx, name="alice")
    sign_requests(ca_ctx)
    return ca_ctx, server_ctx, client_ctx


@pytest.fixture
def certificate_pem() -> Callable[..., bytes]:
    """Return a factory for self-signed PEM certificates with a given CN and serial."""

    def factory(common_name: str | None = "alice", serial: int = 0x3AF2B1, preamble: str = "") -> bytes:
        key = ec.generate_private_key(ec.SECP256R1())
        attributes = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Example")]
        if common_name is not None:
            attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
        subject = x509.Name(attributes)
        now = datetime.now(UTC)
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(serial)
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=30))
            .sign(key, hashes.SHA256())
        )
        return preamble.encode() + cert.public_bytes(serialization.Encoding.PEM)

    return factory
