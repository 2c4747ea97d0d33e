"""Distribution and revocation coordinator.

Hand-off steps between the CA, server and client machines: installing signed
certificates on the role that requested them, rendering OpenVPN profiles, and
applying a regenerated CRL on the server. Every precondition of an operation is
checked before its first write.
"""

from pathlib import Path

from .artifact_store import install_file
from .config import WorkflowContext
from .errors import InvalidInputError, MissingArtifactError
from .logging_config import LOGGER
from .models import AlertResult, PassBackResult, ProfileResult, RevokeResult, Role, Target
from .profile import render_client_profile, render_server_profile, resolve_port, set_directive
from .workflow import PRIVATE_MODE, revoke_certificate, select_first, select_name

PUBLIC_MODE = 0o644
SERVER_CONFIG_NAME = "server.conf"
CRL_NAME = "crl.pem"


def _signed_certificates(ctx: WorkflowContext, target: Target) -> list[Path]:
    role = target.role
    certificates = ctx.store.list_certificates(role)
    if not certificates:
        directory = ctx.store.issued_dir(role)
        raise MissingArtifactError(
            f"{target.value} certificate",
            directory,
            message=f"no {target.value} certificates found in {directory}",
        )
    return certificates


def _client_name(ctx: WorkflowContext, name: str | None) -> str:
    names = [path.stem for path in _signed_certificates(ctx, Target.CLIENT)]
    return select_name(ctx, names, "Client certificate", name)


def _server_name(ctx: WorkflowContext, name: str | None = None) -> str:
    certificates = _signed_certificates(ctx, Target.SERVER)
    if name is not None:
        return select_name(ctx, [path.stem for path in certificates], "Server certificate", name)
    return select_first(certificates, "server certificate").stem


def pass_back(ctx: WorkflowContext, target: Target, name: str | None = None) -> PassBackResult:
    """Install a signed certificate on the machine that requested it.

    Server: installs the signed server certificate next to its private key.
    Client: installs the CA certificate, the chosen client certificate and the
    tls-auth key, and caches the certificate in the working PKI's issued
    directory.

    Raises:
        MissingArtifactError: If the CA certificate, a signed certificate, the
            private key or the tls-auth key is absent
    """
    store, config = ctx.store, ctx.config
    owner, group = config.file_owner, config.file_group
    extra = {"operation": "pass-back", "role": target.role.value}

    if target is Target.SERVER:
        chosen = _server_name(ctx, name)
        store.require(store.ca_cert_path, "CA certificate")
        certificate = store.certificate_path(Role.SERVER, chosen)
        store.require(ctx.toolkit.private_key_path(chosen), "server private key")

        installed = [
            install_file(certificate, config.server_dir / f"{chosen}.crt", PRIVATE_MODE, owner, group),
        ]
        LOGGER.info("Server certificate %s installed", chosen, extra=extra)
        return PassBackResult(target=target, name=chosen, installed=installed)

    chosen = _client_name(ctx, name)
    ca_cert = store.require(store.ca_cert_path, "CA certificate")
    certificate = store.certificate_path(Role.CLIENTS, chosen)
    tls_key = store.require(store.tls_key_path, "tls-auth key")

    installed = [
        install_file(ca_cert, config.client_dir / "ca.crt", PUBLIC_MODE, owner, group),
        install_file(certificate, config.client_dir / f"{chosen}.crt", PRIVATE_MODE, owner, group),
        install_file(tls_key, config.client_dir / "ta.key", PRIVATE_MODE, owner, group),
        store.store(certificate, ctx.toolkit.issued_path(chosen)),
    ]
    LOGGER.info("Client certificate %s installed", chosen, extra=extra)
    return PassBackResult(target=target, name=chosen, installed=installed)


def generate_profile(
    ctx: WorkflowContext,
    target: Target,
    name: str | None = None,
    remote_host: str | None = None,
    remote_port: str | int | None = None,
) -> ProfileResult:
    """Render an OpenVPN configuration from the sample template.

    The server profile is written to ``<openvpn_dir>/server/server.conf``; the
    client profile to ``<openvpn_dir>/client/<name>.conf`` with comments and
    blank lines removed. The client remote port falls back to the default when
    empty or zero.

    Raises:
        PrivilegeError: If not running with elevated privileges
        MissingArtifactError: If the template or a signed certificate is absent
        InvalidInputError: If the remote host is empty or the port is invalid
    """
    ctx.require_privileges()
    config = ctx.config
    extra = {"operation": "generate-profile", "role": target.role.value}

    if target is Target.SERVER:
        template = ctx.store.require(config.server_template, "server configuration template")
        chosen = _server_name(ctx)
        rendered = render_server_profile(template.read_text(), chosen)
        output = config.server_dir / SERVER_CONFIG_NAME
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(rendered)
        LOGGER.info("Server profile written to %s", output, extra=extra)
        return ProfileResult(target=target, name=chosen, path=output)

    template = ctx.store.require(config.client_template, "client configuration template")
    chosen = _client_name(ctx, name)

    if remote_host is None:
        remote_host = ctx.operator.ask("Server address clients connect to", "")
    remote_host = remote_host.strip()
    if not remote_host:
        raise InvalidInputError("remote host must not be empty")
    if remote_port is None:
        remote_port = ctx.operator.ask("Server port", str(config.default_port))
    port = resolve_port(remote_port, config.default_port)

    rendered = render_client_profile(template.read_text(), chosen, remote_host, port)
    output = config.client_dir / f"{chosen}.conf"
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(rendered)
    LOGGER.info("Client profile written to %s", output, extra=extra)
    return ProfileResult(target=target, name=chosen, path=output, remote=f"{remote_host} {port}")


def alert_server(ctx: WorkflowContext) -> AlertResult:
    """Apply the cached CRL on the server and restart OpenVPN.

    Installs the CRL into the server directory, points the server
    configuration's ``crl-verify`` at it (reusing an existing or commented-out
    directive, else appending one), then restarts the service. A failed
    restart is logged and reported in the result, not raised.

    Raises:
        PrivilegeError: If not running with elevated privileges
        MissingArtifactError: If the CRL or server configuration is absent
    """
    ctx.require_privileges()
    store, config = ctx.store, ctx.config
    crl = store.require(store.crl_path, "certificate revocation list")
    config_path = store.require(config.server_dir / SERVER_CONFIG_NAME, "server configuration")
    extra = {"operation": "alert", "role": "server"}

    crl_path = install_file(crl, config.server_dir / CRL_NAME, PUBLIC_MODE, config.file_owner, config.file_group)

    lines, appended = set_directive(config_path.read_text().splitlines(), "crl-verify", str(crl_path))
    config_path.write_text("\n".join(lines) + "\n")
    LOGGER.info("%s crl-verify %s in %s", "Added" if appended else "Updated", crl_path, config_path, extra=extra)

    restarted = ctx.toolkit.restart_service(config.service_name)
    if not restarted:
        LOGGER.error("CRL installed but %s was not restarted; restart it manually", config.service_name)
    return AlertResult(crl_path=crl_path, config_path=config_path, directive_added=appended, restarted=restarted)


def revoke_and_alert(ctx: WorkflowContext, target: Target, name: str | None = None) -> tuple[RevokeResult, AlertResult | None]:
    """Revoke a certificate, then alert the server when the server itself was revoked.

    Client revocations only regenerate the CRL; the operator carries it to the
    server and runs the alert step there.
    """
    revoked = revoke_certificate(ctx, target, name)
    if target is not Target.SERVER:
        return revoked, None
    return revoked, alert_server(ctx)

