"""Error taxonomy for PKI workflow operations."""

from collections.abc import Sequence
from pathlib import Path


class PKIWorkflowError(Exception):
    """Base class for every fatal condition raised by a workflow operation."""


class PreconditionError(PKIWorkflowError):
    """A requirement of the operation is not met; nothing was changed by this step."""


class MissingArtifactError(PreconditionError):
    """A required upstream artifact is absent from its expected location."""

    def __init__(self, description: str, path: Path | None = None, message: str | None = None) -> None:
        self.description = description
        self.path = path
        if message is None:
            message = f"{description} not found"
            if path is not None:
                message = f"{message}: {path}"
        super().__init__(message)


class PrivilegeError(PreconditionError):
    """Operation needs elevated privileges."""


class MissingProgramError(PreconditionError):
    """External program is not installed or not on PATH."""

    def __init__(self, program: str) -> None:
        self.program = program
        super().__init__(f"required program not found: {program}")


class InvalidInputError(PreconditionError):
    """Operator supplied a value the operation cannot use."""


class ToolkitError(PKIWorkflowError):
    """External toolkit command exited with a non-zero status."""

    def __init__(self, args: Sequence[str], returncode: int, output: str = "") -> None:
        self.command = tuple(args)
        self.returncode = returncode
        self.output = output
        message = f"command failed with exit status {returncode}: {' '.join(self.command)}"
        last_line = output.strip().splitlines()[-1] if output.strip() else ""
        if last_line:
            message = f"{message} ({last_line})"
        super().__init__(message)


class OperatorAbort(PKIWorkflowError):
    """Operator interrupted or declined the operation."""

    def __init__(self, message: str = "aborted by user") -> None:
        super().__init__(message)


class SubjectParseError(PKIWorkflowError):
    """Certificate introspection output has no usable subject."""
