#!/usr/bin/env python3
"""Run one step of the OpenVPN PKI lifecycle on this machine.

Steps in order across machines: --setup-ca (CA), --setup-server all (server),
--setup-client (each client), --sign (CA), --pass-back server|client,
--generate-profile server|client, and later --revoke (CA) and --alert (server).
The cache root is carried between machines after each step.
"""

import argparse
import sys
from pathlib import Path

from ovpn_pki.lib.artifact_store import ArtifactStore
from ovpn_pki.lib.config import WorkflowConfig, WorkflowContext
from ovpn_pki.lib.distribution import alert_server, generate_profile, pass_back, revoke_and_alert
from ovpn_pki.lib.errors import OperatorAbort, PKIWorkflowError, PreconditionError
from ovpn_pki.lib.logging_config import LOGGER, set_log_level
from ovpn_pki.lib.models import Role, ServerStep, Target
from ovpn_pki.lib.operator import Operator, TerminalOperator
from ovpn_pki.lib.toolkit import CommandRunner, PKIToolkit, SubprocessRunner
from ovpn_pki.lib.workflow import (
    lifecycle_report,
    reset,
    setup_ca,
    setup_client_artifact,
    setup_server_artifact,
    sign_requests,
)

TARGETS = [target.value for target in Target]
SERVER_STEPS = [str(step.value) for step in ServerStep] + ["all"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="OpenVPN certificate authority and key distribution workflow")

    operations = parser.add_mutually_exclusive_group(required=True)
    operations.add_argument("--setup-ca", action="store_true", help="Create the CA on this machine")
    operations.add_argument(
        "--setup-server",
        choices=SERVER_STEPS,
        metavar="{1,2,3,4,all}",
        help="Server setup step: 1 CA cert, 2 key+request, 3 DH params, 4 tls-auth key, or all",
    )
    operations.add_argument("--setup-client", action="store_true", help="Generate a client key and request")
    operations.add_argument("--sign", action="store_true", help="Import and sign pending requests on the CA")
    operations.add_argument("--pass-back", choices=TARGETS, help="Install signed certificates on a role")
    operations.add_argument("--generate-profile", choices=TARGETS, help="Render an OpenVPN configuration")
    operations.add_argument("--revoke", choices=TARGETS, help="Revoke a certificate and regenerate the CRL")
    operations.add_argument("--alert", action="store_true", help="Apply the CRL on the server and restart it")
    operations.add_argument(
        "--reset",
        nargs="?",
        const="all",
        choices=[role.value for role in Role] + ["all"],
        help="Delete the cache root, or one role's subtree",
    )
    operations.add_argument("--status", action="store_true", help="Show the lifecycle state of known identities")

    parser.add_argument("--force", action="store_true", help="Skip confirmations and redo completed steps")
    parser.add_argument("--key-size", type=int, help="Diffie-Hellman parameter size in bits (default: 2048)")
    parser.add_argument("--name", help="Certificate name instead of prompting")
    parser.add_argument("--remote-host", help="Server address for the client profile")
    parser.add_argument("--remote-port", help="Server port for the client profile (default: 1194)")
    parser.add_argument("--cache-root", type=Path, help="Durable store location (default: ~/.ovpn-pki)")
    parser.add_argument("--log-level", help="Log level (default: INFO or $OVPN_PKI_LOG_LEVEL)")
    return parser


def build_context(
    args: argparse.Namespace,
    runner: CommandRunner | None = None,
    operator: Operator | None = None,
    config: WorkflowConfig | None = None,
) -> WorkflowContext:
    """Wire configuration, store, toolkit and operator for one invocation."""
    config = config or WorkflowConfig.from_env()
    if args.cache_root is not None:
        config.cache_root = args.cache_root
    if args.key_size is not None:
        config.key_size = args.key_size

    return WorkflowContext(
        config=config,
        store=ArtifactStore(config.cache_root),
        toolkit=PKIToolkit(runner or SubprocessRunner(), config),
        operator=operator or TerminalOperator(),
        force=args.force,
    )


def run_operation(args: argparse.Namespace, ctx: WorkflowContext) -> str:
    """Dispatch the selected operation and return the operation name."""
    if args.setup_ca:
        result = setup_ca(ctx)
        LOGGER.info("CA certificate cached at %s. Next: --setup-server all on the server", result.ca_cert_path)
        return "setup-ca"

    if args.setup_server:
        step = "all" if args.setup_server == "all" else ServerStep(int(args.setup_server))
        result = setup_server_artifact(ctx, step, name=args.name)
        LOGGER.info(
            "Server setup: completed %s, skipped %s",
            [s.name for s in result.completed],
            [s.name for s in result.skipped],
        )
        return "setup-server"

    if args.setup_client:
        request = setup_client_artifact(ctx, name=args.name)
        LOGGER.info("Client request %s cached at %s. Next: --sign on the CA", request.name, request.request_path)
        return "setup-client"

    if args.sign:
        result = sign_requests(ctx)
        for path in result.certificates:
            LOGGER.info("  Cert: %s", path)
        return "sign"

    if args.pass_back:
        result = pass_back(ctx, Target(args.pass_back), name=args.name)
        LOGGER.info("Installed %d files for %s", len(result.installed), result.name)
        return "pass-back"

    if args.generate_profile:
        profile = generate_profile(
            ctx,
            Target(args.generate_profile),
            name=args.name,
            remote_host=args.remote_host,
            remote_port=args.remote_port,
        )
        LOGGER.info("Profile written: %s", profile.path)
        return "generate-profile"

    if args.revoke:
        revoked, alerted = revoke_and_alert(ctx, Target(args.revoke), name=args.name)
        LOGGER.info("Revoked %s. CRL: %s", revoked.name, revoked.crl_path)
        if alerted is None:
            LOGGER.info("Next: carry the CRL to the server and run --alert")
        return "revoke"

    if args.alert:
        alert_server(ctx)
        return "alert"

    if args.reset:
        reset(ctx, None if args.reset == "all" else Role(args.reset))
        return "reset"

    if args.status:
        for status in lifecycle_report(ctx):
            LOGGER.info("%s/%s: %s", status.role.value, status.name, status.state.value)
        return "status"

    raise ValueError("no operation selected")


def main(argv: list[str] | None = None) -> int:
    """Run the selected workflow operation.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        try:
            set_log_level(args.log_level)
        except ValueError as e:
            parser.error(str(e))

    try:
        ctx = build_context(args)
        operation = run_operation(args, ctx)
        LOGGER.info("%s complete", operation)
        return 0

    except KeyboardInterrupt:
        LOGGER.error("Aborted by user")
        return 1
    except OperatorAbort as e:
        LOGGER.error("Aborted: %s", e)
        return 1
    except PreconditionError as e:
        LOGGER.error("Precondition failed: %s", e)
        return 1
    except PKIWorkflowError as e:
        LOGGER.error("Operation failed: %s", e)
        return 1
    except ValueError as e:
        LOGGER.error("Invalid configuration: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
