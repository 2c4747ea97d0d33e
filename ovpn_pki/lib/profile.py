"""Line-oriented rewriting of OpenVPN configuration directives."""

import re

from .errors import InvalidInputError

_DIRECTIVE = re.compile(r"^(?P<comment>[;#]*)\s*(?P<name>[A-Za-z][\w-]*)(?:\s+(?P<args>.*))?$")


def _directive_of(line: str) -> tuple[bool, str | None]:
    """Return (commented, directive name) for a configuration line."""
    match = _DIRECTIVE.match(line.strip())
    if not match:
        return False, None
    return bool(match.group("comment")), match.group("name")


def set_directive(lines: list[str], name: str, value: str, activate_commented: bool = True) -> tuple[list[str], bool]:
    """Leave exactly one active ``name value`` line in a configuration.

    The first active occurrence is replaced and later active duplicates are
    dropped. With no active occurrence, the first commented one is replaced
    when ``activate_commented`` is set; otherwise the directive is appended.

    Args:
        lines: Configuration lines without trailing newlines
        name: Directive name, e.g. ``crl-verify``
        value: Arguments written after the directive name
        activate_commented: Whether a commented-out occurrence may be reused

    Returns:
        (new lines, True if the directive was appended)
    """
    new_line = f"{name} {value}".rstrip()
    active = [i for i, line in enumerate(lines) if _directive_of(line) == (False, name)]

    if active:
        result = []
        for i, line in enumerate(lines):
            if i == active[0]:
                result.append(new_line)
            elif i not in active:
                result.append(line)
        return result, False

    if activate_commented:
        for i, line in enumerate(lines):
            if _directive_of(line) == (True, name):
                return [*lines[:i], new_line, *lines[i + 1 :]], False

    return [*lines, new_line], True


def activate_directive(lines: list[str], name: str) -> list[str]:
    """Uncomment the first commented ``name`` directive, keeping its arguments."""
    if any(_directive_of(line) == (False, name) for line in lines):
        return lines
    for i, line in enumerate(lines):
        if _directive_of(line) == (True, name):
            return [*lines[:i], line.strip().lstrip(";#").strip(), *lines[i + 1 :]]
    return lines


def strip_comments(lines: list[str]) -> list[str]:
    """Drop blank lines and lines starting with ``#`` or ``;``."""
    return [line for line in lines if line.strip() and not line.lstrip().startswith(("#", ";"))]


def resolve_port(raw: str | int | None, default: int) -> int:
    """Turn operator port input into a port number.

    Empty input and ``0`` fall back to ``default``.

    Raises:
        InvalidInputError: If the input is not a number in 1..65535
    """
    text = "" if raw is None else str(raw).strip()
    if not text:
        return default
    try:
        port = int(text)
    except ValueError as e:
        raise InvalidInputError(f"port must be a number: {text!r}") from e
    if port == 0:
        return default
    if not 0 < port < 65536:
        raise InvalidInputError(f"port out of range: {port}")
    return port


def render_server_profile(template: str, name: str) -> str:
    """Point a server template at the installed certificate, key, DH and TLS key."""
    lines = template.splitlines()
    lines, _ = set_directive(lines, "cert", f"{name}.crt")
    lines, _ = set_directive(lines, "key", f"{name}.key")
    lines, _ = set_directive(lines, "dh", "dh.pem")
    lines, _ = set_directive(lines, "tls-auth", "ta.key 0")
    lines = activate_directive(lines, "user")
    lines = activate_directive(lines, "group")
    return "\n".join(lines) + "\n"


def render_client_profile(template: str, name: str, host: str, port: int) -> str:
    """Point a client template at the remote and installed credentials.

    Comment and blank lines are removed from the result.
    """
    lines = template.splitlines()
    lines, _ = set_directive(lines, "remote", f"{host} {port}", activate_commented=False)
    lines, _ = set_directive(lines, "cert", f"{name}.crt")
    lines, _ = set_directive(lines, "key", f"{name}.key")
    lines, _ = set_directive(lines, "tls-auth", "ta.key 1")
    lines = activate_directive(lines, "user")
    lines = activate_directive(lines, "group")
    return "\n".join(strip_comments(lines)) + "\n"
