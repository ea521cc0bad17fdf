"""Exceptions related to kubit."""

__all__ = [
    "KubitException",
    "InputException",
    "CommandException",
    "ResolutionError",
    "NotFound",
    "AuthFailed",
    "CorruptArtifact",
    "UnsupportedFormat",
    "RegistryUnavailable",
    "PlanError",
    "ExecutionError",
    "AttemptTimeoutError",
    "ConflictError",
    "UninstallError",
    "ObjectSetCollisionError",
    "ObjectNotFoundError",
]


class KubitException(Exception):
    """Generic base exception used for this library."""

    reason: str = "Error"
    """Machine readable reason written into status conditions."""

    retryable: bool = False
    """Whether the controller should retry the attempt with backoff."""


class InputException(KubitException):
    """Raised when the input files or values are not formatted as expected."""

    reason = "InvalidSpec"


class CommandException(KubitException):
    """Raised when there is a failure running a subcommand."""

    def __init__(
        self,
        message: str,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class ResolutionError(KubitException):
    """Raised when a package artifact could not be resolved."""

    reason = "ResolutionFailed"

    def __init__(self, reference: str, message: str) -> None:
        super().__init__(f"Unable to resolve package {reference}: {message}")
        self.reference = reference


class NotFound(ResolutionError):
    """The artifact reference does not name a retrievable artifact."""

    reason = "NotFound"
    retryable = True


class AuthFailed(ResolutionError):
    """None of the supplied credentials were accepted by the registry."""

    reason = "AuthFailed"
    retryable = True


class RegistryUnavailable(ResolutionError):
    """The registry could not be reached or is throttling requests."""

    reason = "RegistryUnavailable"
    retryable = True


class CorruptArtifact(ResolutionError):
    """The artifact content failed integrity or structure validation.

    This is terminal until the referenced artifact changes.
    """

    reason = "CorruptArtifact"


class UnsupportedFormat(ResolutionError):
    """The artifact is well formed but not a package kubit understands."""

    reason = "UnsupportedFormat"


class PlanError(KubitException):
    """Raised when an execution plan cannot be built from the installation."""

    reason = "PlanFailed"


class ExecutionError(KubitException):
    """Raised when a phase of an execution plan fails.

    The captured output is kept verbatim so it can be surfaced in status.
    """

    retryable = True

    def __init__(self, phase: str, exit_code: int | None, output: str) -> None:
        super().__init__(
            f"Phase '{phase}' failed with exit code {exit_code}: {output.strip()}"
        )
        self.phase = phase
        self.exit_code = exit_code
        self.output = output

    @property
    def reason(self) -> str:  # type: ignore[override]
        """Reason derived from the failing phase e.g. `RenderFailed`."""
        return f"{self.phase.capitalize()}Failed"


class AttemptTimeoutError(KubitException):
    """Raised when an attempt exceeds its wall clock limit."""

    reason = "Timeout"
    retryable = True


class ConflictError(KubitException):
    """An attempt for the installation is already in flight.

    This is never surfaced to the user; the trigger is coalesced instead.
    """

    reason = "Conflict"


class UninstallError(KubitException):
    """Raised when members of an object set refuse to be deleted."""

    reason = "UninstallFailed"
    retryable = True


class ObjectSetCollisionError(KubitException):
    """Two distinct installations map to the same object set id.

    This is a programming invariant violation and is fatal to the controller.
    """

    reason = "ObjectSetCollision"


class ObjectNotFoundError(KubitException):
    """Raised when an object is not found in the store."""
