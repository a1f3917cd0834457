"""
Error taxonomy shared by the provider, the reconciler and the CLI.
"""
from typing import List, Optional


class ProvisionError(Exception):
    """Base class for every error raised by pipeinfra."""


class NotLoggedIn(ProvisionError):
    """The cloud CLI has no active session. Fatal."""


class DependencyUnavailable(ProvisionError):
    """Required tooling or the network is missing. Fatal."""


class ValidationFailed(ProvisionError):
    """The desired state was rejected before any mutating call."""

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.problems = problems or []

    def __str__(self) -> str:
        base = super().__str__()
        if not self.problems:
            return base
        return base + "\n" + "\n".join(f"  - {p}" for p in self.problems)


class TemplateError(ValidationFailed):
    """A declarative template could not be loaded or rendered."""


class CommandFailed(ProvisionError):
    """A provider call returned an error."""

    def __init__(self, command: List[str], returncode: int, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        super().__init__(
            f"'{' '.join(command)}' exited with {returncode}"
            + (f": {self.stderr}" if self.stderr else "")
        )


class CreateFailed(ProvisionError):
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"create of '{key}' failed: {reason}")


class DeleteFailed(ProvisionError):
    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"delete of '{name}' failed: {reason}")
