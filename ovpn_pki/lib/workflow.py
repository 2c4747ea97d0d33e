"""Role workflow engine: CA setup, key and request generation, signing, revocation.

Every operation takes a ``WorkflowContext`` and either returns a result model
or raises a ``PKIWorkflowError``. A failing external command aborts the rest of
the operation; work completed before the failure is left in place, and the
skip-if-exists checks make a re-run pick up where it stopped.
"""

from collections.abc import Sequence
from pathlib import Path

from .artifact_store import install_file
from .cert_metadata import extract_certificate_metadata, read_common_name
from .config import WorkflowContext
from .errors import InvalidInputError, MissingArtifactError, OperatorAbort
from .logging_config import LOGGER
from .models import (
    IdentityState,
    IdentityStatus,
    RequestResult,
    RevokeResult,
    Role,
    ServerSetupResult,
    ServerStep,
    ServerStepSelection,
    SetupCAResult,
    SignResult,
    Target,
)

PRIVATE_MODE = 0o600


def select_first(candidates: Sequence[Path], description: str) -> Path:
    """Deterministically pick the candidate with the lowest stem.

    Raises:
        MissingArtifactError: If there are no candidates
    """
    if not candidates:
        raise MissingArtifactError(description)
    ordered = sorted(candidates, key=lambda path: path.stem)
    if len(ordered) > 1:
        LOGGER.warning(
            "Found %d %s candidates; using %s, ignoring %s",
            len(ordered),
            description,
            ordered[0].stem,
            ", ".join(path.stem for path in ordered[1:]),
        )
    return ordered[0]


def select_name(ctx: WorkflowContext, names: Sequence[str], question: str, name: str | None = None) -> str:
    """Resolve one identity name among candidates.

    An explicit name must be a candidate; a single candidate is taken without
    asking; otherwise the operator chooses.

    Raises:
        InvalidInputError: If an explicit name is not among the candidates
    """
    if name is not None:
        if name not in names:
            raise InvalidInputError(f"{name!r} is not one of: {', '.join(names)}")
        return name
    if len(names) == 1:
        return names[0]
    return ctx.operator.choose(question, list(names))


def _confirm(ctx: WorkflowContext, question: str) -> None:
    if ctx.force:
        return
    if not ctx.operator.confirm(question):
        raise OperatorAbort("declined by operator")


def _ensure_pki(ctx: WorkflowContext) -> bool:
    """Initialize the local working PKI if it does not exist yet."""
    if ctx.toolkit.pki_dir.is_dir():
        return False
    ctx.toolkit.init_pki()
    LOGGER.info("Initialized working PKI at %s", ctx.toolkit.pki_dir)
    return True


def setup_ca(ctx: WorkflowContext) -> SetupCAResult:
    """Create the certificate authority on this machine.

    Initializes the working PKI when absent, builds the CA key and certificate
    when absent, then caches the public CA certificate in the durable store.
    With ``force`` both steps run unconditionally and no confirmation is asked.

    Returns:
        SetupCAResult describing which steps ran

    Raises:
        PrivilegeError: If not running with elevated privileges
        MissingProgramError: If easyrsa is not installed
        OperatorAbort: If the operator declines
        ToolkitError: If any easyrsa invocation fails
    """
    ctx.require_privileges()
    ctx.toolkit.ensure_available(ctx.config.easyrsa_bin)
    _confirm(ctx, f"Set up a certificate authority in {ctx.config.easyrsa_dir}?")

    toolkit = ctx.toolkit
    pki_initialized = False
    if ctx.force or not toolkit.pki_dir.is_dir():
        toolkit.init_pki()
        pki_initialized = True
        LOGGER.info("Initialized PKI at %s", toolkit.pki_dir, extra={"operation": "setup-ca", "role": "ca"})

    ca_built = False
    if ctx.force or not toolkit.ca_cert_path.exists():
        toolkit.build_ca()
        ca_built = True
        LOGGER.info("Built CA certificate %s", toolkit.ca_cert_path, extra={"operation": "setup-ca", "role": "ca"})
    else:
        LOGGER.info("CA certificate already exists: %s", toolkit.ca_cert_path)

    toolkit_ca = ctx.store.require(toolkit.ca_cert_path, "CA certificate")
    cached = ctx.store.store(toolkit_ca, ctx.store.ca_cert_path)

    return SetupCAResult(pki_initialized=pki_initialized, ca_built=ca_built, ca_cert_path=cached)


def generate_request(ctx: WorkflowContext, role: Role, name: str | None = None) -> RequestResult:
    """Generate a keypair and certificate request for a server or client identity.

    Prompts for the name unless given. An existing request of the same name in
    the working PKI is reused unless ``force`` is set. The private key is
    installed into the role's OpenVPN directory; the request is cached in the
    durable store for transfer to the CA.
    """
    if role is Role.CA:
        raise ValueError("the CA role does not generate requests")

    if role is Role.SERVER:
        default, config_dir = ctx.config.server_name_default, ctx.config.server_dir
    else:
        default, config_dir = ctx.config.client_name_default, ctx.config.client_dir

    if name is None:
        name = ctx.operator.ask(f"Name for the {role.value} certificate", default)
    name = name.strip()
    if not name or "/" in name:
        raise InvalidInputError(f"invalid certificate name: {name!r}")

    toolkit = ctx.toolkit
    _ensure_pki(ctx)

    generated = False
    if ctx.force or not toolkit.request_path(name).exists():
        toolkit.gen_req(name)
        generated = True
        LOGGER.info("Generated request %s", name, extra={"operation": "generate-request", "role": role.value})
    else:
        LOGGER.info("Request %s already exists; reusing it", name)

    request = ctx.store.require(toolkit.request_path(name), "certificate request")
    key = ctx.store.require(toolkit.private_key_path(name), "private key")

    request_path = ctx.store.store(request, ctx.store.request_path(role, name))
    key_path = install_file(
        key,
        config_dir / f"{name}.key",
        PRIVATE_MODE,
        ctx.config.file_owner,
        ctx.config.file_group,
    )
    return RequestResult(name=name, generated=generated, request_path=request_path, key_path=key_path)


def setup_server_artifact(
    ctx: WorkflowContext, step: ServerStepSelection = "all", name: str | None = None
) -> ServerSetupResult:
    """Run one or all of the server setup sub-steps.

    1. install the CA certificate (skipped if present unless forced)
    2. generate the server keypair and request (skipped if present unless forced)
    3. generate DH parameters of ``config.key_size`` bits (always)
    4. generate the tls-auth key and cache a copy (always)

    Returns:
        ServerSetupResult listing completed and skipped steps
    """
    steps = list(ServerStep) if step == "all" else [ServerStep(step)]
    result = ServerSetupResult()
    config = ctx.config
    extra = {"operation": "setup-server", "role": "server"}

    for current in steps:
        if current is ServerStep.CA_CERT:
            destination = config.server_dir / "ca.crt"
            if destination.exists() and not ctx.force:
                LOGGER.info("CA certificate already installed: %s", destination, extra=extra)
                result.skipped.append(current)
                continue
            source = ctx.store.require(ctx.store.ca_cert_path, "CA certificate")
            result.written.append(install_file(source, destination, 0o644, config.file_owner, config.file_group))

        elif current is ServerStep.REQUEST:
            request = generate_request(ctx, Role.SERVER, name)
            result.request_name = request.name
            if not request.generated:
                result.skipped.append(current)
                continue
            result.written.extend([request.request_path, request.key_path])

        elif current is ServerStep.DH_PARAMS:
            ctx.toolkit.ensure_available(config.openssl_bin)
            dh_path = config.server_dir / "dh.pem"
            LOGGER.info("Generating %d-bit DH parameters; this can take a while", config.key_size, extra=extra)
            ctx.toolkit.gen_dh(config.key_size, dh_path)
            result.written.append(dh_path)

        elif current is ServerStep.TLS_KEY:
            ctx.toolkit.ensure_available(config.openvpn_bin)
            key_path = config.server_dir / "ta.key"
            ctx.toolkit.gen_tls_key(key_path)
            key_path.chmod(PRIVATE_MODE)
            result.written.extend([key_path, ctx.store.store(key_path, ctx.store.tls_key_path)])

        result.completed.append(current)

    return result


def setup_client_artifact(ctx: WorkflowContext, name: str | None = None) -> RequestResult:
    """Generate one client keypair and request; call again for more clients."""
    return generate_request(ctx, Role.CLIENTS, name)


def _sign_one(ctx: WorkflowContext, kind: str, role: Role, request: Path, result: SignResult) -> None:
    toolkit = ctx.toolkit
    stem = request.stem
    extra = {"operation": "sign", "role": role.value}

    if not ctx.force and ctx.store.is_revoked(role, stem):
        LOGGER.warning("Request %s belongs to a revoked certificate; not signing it again", stem, extra=extra)
        result.skipped.append(stem)
        return

    if toolkit.request_path(stem).exists():
        LOGGER.info("Request %s already imported", stem, extra=extra)
    else:
        toolkit.import_req(request, stem)
        result.imported.append(stem)

    if ctx.force or not toolkit.issued_path(stem).exists():
        toolkit.sign_req(kind, stem)
        result.signed.append(stem)
        LOGGER.info("Signed %s request %s", kind, stem, extra=extra)
    else:
        LOGGER.info("Request %s already signed", stem, extra=extra)
        result.skipped.append(stem)

    issued = ctx.store.require(toolkit.issued_path(stem), "issued certificate")
    cn = read_common_name(toolkit, issued)
    destination = ctx.store.store(issued, ctx.store.certificate_path(role, cn))
    result.certificates.append(destination)

    if ctx.force or ctx.store.read_metadata(role, cn) is None:
        metadata = extract_certificate_metadata(destination.read_bytes())
        ctx.store.write_metadata(role, cn, metadata)
        LOGGER.info("Recorded %s serial %s", cn, metadata["serialNumber"], extra=extra)


def sign_requests(ctx: WorkflowContext) -> SignResult:
    """Import and sign the pending server and client requests on the CA.

    The server request with the lowest stem and every client request are
    imported when not yet imported and signed when not yet signed. Each signed
    certificate is copied into the durable store under its Common Name.
    Requests of revoked identities are skipped unless ``force`` is set.

    Raises:
        MissingArtifactError: If no server or no client request is in the store
        ToolkitError: If an import or signing command fails
    """
    ctx.require_privileges()
    ctx.toolkit.ensure_available(ctx.config.easyrsa_bin)
    store = ctx.store

    server_request = select_first(store.list_requests(Role.SERVER), "server certificate request")
    client_requests = store.list_requests(Role.CLIENTS)
    if not client_requests:
        raise MissingArtifactError("client certificate request", store.reqs_dir(Role.CLIENTS))
    store.require(ctx.toolkit.ca_cert_path, "CA certificate")

    result = SignResult()
    _sign_one(ctx, "server", Role.SERVER, server_request, result)
    for request in client_requests:
        _sign_one(ctx, "client", Role.CLIENTS, request, result)

    LOGGER.info(
        "Signing complete: %d imported, %d signed, %d already signed",
        len(result.imported),
        len(result.signed),
        len(result.skipped),
    )
    return result


def revoke_certificate(ctx: WorkflowContext, target: Target, name: str | None = None) -> RevokeResult:
    """Revoke a signed certificate and regenerate the CRL.

    Does not alert the server; see ``distribution.revoke_and_alert``.

    Raises:
        MissingArtifactError: If the role has no active signed certificate
        ToolkitError: If revoke or gen-crl fails
    """
    ctx.require_privileges()
    ctx.toolkit.ensure_available(ctx.config.easyrsa_bin)
    role = target.role
    certificates = ctx.store.list_certificates(role)

    if not certificates:
        raise MissingArtifactError(f"{target.value} certificate", ctx.store.issued_dir(role))
    if target is Target.SERVER and name is None:
        chosen = select_first(certificates, "server certificate").stem
    else:
        names = [path.stem for path in certificates]
        chosen = select_name(ctx, names, f"{target.value.capitalize()} certificate to revoke", name)

    ctx.toolkit.revoke(chosen)
    ctx.toolkit.gen_crl()
    crl = ctx.store.require(ctx.toolkit.crl_path, "certificate revocation list")
    crl_path = ctx.store.store(crl, ctx.store.crl_path)
    ctx.store.mark_revoked(role, chosen)

    LOGGER.info("Revoked %s; CRL cached at %s", chosen, crl_path, extra={"operation": "revoke", "role": role.value})
    return RevokeResult(role=role, name=chosen, crl_path=crl_path)


def reset(ctx: WorkflowContext, role: Role | None = None) -> Path:
    """Delete the durable store, or one role's subtree. Irreversible."""
    target = ctx.store.root if role is None else ctx.store.role_dir(role)
    _confirm(ctx, f"Permanently delete {target}?")
    return ctx.store.reset(role)


def _identity_state(ctx: WorkflowContext, role: Role, name: str) -> IdentityState:
    store, toolkit = ctx.store, ctx.toolkit
    if store.is_revoked(role, name):
        return IdentityState.REVOKED
    config_dir = ctx.config.server_dir if role is Role.SERVER else ctx.config.client_dir
    if store.certificate_path(role, name).exists():
        if (config_dir / f"{name}.crt").exists():
            return IdentityState.DISTRIBUTED
        return IdentityState.SIGNED
    if toolkit.issued_path(name).exists():
        return IdentityState.SIGNED
    # only the CA machine holds ca.key, so only there does pki/reqs mean imported
    if toolkit.ca_key_path.exists() and toolkit.request_path(name).exists():
        return IdentityState.IMPORTED
    if store.request_path(role, name).exists():
        return IdentityState.REQUESTED
    return IdentityState.UNREQUESTED


def lifecycle_report(ctx: WorkflowContext) -> list[IdentityStatus]:
    """Report the lifecycle state of every identity known to the durable store."""
    report = []
    for role in (Role.SERVER, Role.CLIENTS):
        names = {path.stem for path in ctx.store.list_requests(role)}
        names.update(path.stem for path in ctx.store.list_certificates(role, include_revoked=True))
        for name in sorted(names):
            report.append(IdentityStatus(role=role, name=name, state=_identity_state(ctx, role, name)))
    return report
