"""Operator interaction capability used by workflow operations."""

from collections.abc import Callable, Sequence
from typing import Protocol

from .errors import OperatorAbort
from .logging_config import LOGGER


class Operator(Protocol):
    """Questions a workflow operation may put to the operator."""

    def confirm(self, question: str) -> bool: ...

    def ask(self, question: str, default: str) -> str: ...

    def choose(self, question: str, candidates: Sequence[str]) -> str: ...


class TerminalOperator:
    """Operator backed by blocking terminal input."""

    def __init__(self, read: Callable[[str], str] = input) -> None:
        self._read = read

    def _prompt(self, text: str) -> str:
        try:
            return self._read(text)
        except (KeyboardInterrupt, EOFError) as e:
            raise OperatorAbort() from e

    def confirm(self, question: str) -> bool:
        answer = self._prompt(f"{question} [y/N] ").strip().lower()
        return answer in ("y", "yes")

    def ask(self, question: str, default: str) -> str:
        answer = self._prompt(f"{question} [{default}]: ").strip()
        return answer or default

    def choose(self, question: str, candidates: Sequence[str]) -> str:
        """Ask for one of the candidate names, with tab completion where available.

        Re-prompts until the answer names a candidate.
        """
        if not candidates:
            raise ValueError("no candidates to choose from")

        with _Completion(candidates):
            while True:
                answer = self._prompt(f"{question} ({', '.join(candidates)}): ").strip()
                if answer in candidates:
                    return answer
                LOGGER.warning("Unknown name %r; choose one of %s", answer, ", ".join(candidates))


class _Completion:
    """Install a readline completer for the duration of a prompt."""

    def __init__(self, candidates: Sequence[str]) -> None:
        self.candidates = list(candidates)
        self._previous = None
        self._readline = None

    def __enter__(self) -> None:
        try:
            import readline
        except ImportError:
            return
        self._readline = readline
        self._previous = readline.get_completer()
        readline.set_completer(self._complete)
        readline.parse_and_bind("tab: complete")

    def __exit__(self, *exc_info) -> None:
        if self._readline is not None:
            self._readline.set_completer(self._previous)

    def _complete(self, text: str, state: int) -> str | None:
        matches = [name for name in self.candidates if name.startswith(text)]
        return matches[state] if state < len(matches) else None
