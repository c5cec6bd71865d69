from __future__ import annotations

EXIT_SUCCESS = 0
EXIT_PARTIAL = 1
EXIT_CONFLICT = 2
EXIT_DEPENDENCY = 3
EXIT_INVALID_ARGS = 4
EXIT_INTERRUPTED = 5
EXIT_BUILD_FAILED = 6
EXIT_RELEASE_FAILED = 7
EXIT_NETWORK = 8


class ShipyardError(RuntimeError):
    """Base class for run-level failures."""

    exit_code = EXIT_DEPENDENCY


class LockConflict(ShipyardError):
    """Raised when a live lock is already held for a repository."""

    exit_code = EXIT_CONFLICT

    def __init__(self, repo: str, holder_run_id: str | None = None) -> None:
        message = f"Repository '{repo}' is locked"
        if holder_run_id:
            message += f" by {holder_run_id}"
        super().__init__(message + ".")
        self.repo = repo
        self.holder_run_id = holder_run_id


class CollaboratorError(ShipyardError):
    """Raised when an external collaborator call fails."""

    def __init__(
        self,
        message: str,
        *,
        collaborator: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.collaborator = collaborator
        self.process_exit_code = exit_code
        self.retriable = retriable


class DependencyError(CollaboratorError):
    """Raised when a required external tool is missing or unusable."""

    exit_code = EXIT_DEPENDENCY

    def __init__(self, message: str, *, collaborator: str | None = None) -> None:
        super().__init__(message, collaborator=collaborator, retriable=False)


class CollaboratorAuthError(DependencyError):
    """Raised when a collaborator rejects our credentials."""


class NetworkError(CollaboratorError):
    """Raised for transient fetch failures."""

    exit_code = EXIT_NETWORK


class BuildFailed(ShipyardError):
    exit_code = EXIT_BUILD_FAILED


class ReleaseFailed(ShipyardError):
    exit_code = EXIT_RELEASE_FAILED


class NotThrottled(ShipyardError):
    """Raised when a fallback run is requested for a repository hosted CI can serve."""

    exit_code = EXIT_INVALID_ARGS


class RoutingError(ShipyardError):
    """Raised when a workflow cannot be planned at all."""

    exit_code = EXIT_INVALID_ARGS


class UnsupportedPlatform(ShipyardError):
    exit_code = EXIT_INVALID_ARGS

    def __init__(self, job: str, label: str) -> None:
        super().__init__(f"Job '{job}' runs on unsupported platform label '{label}'.")
        self.job = job
        self.label = label


class InvalidTransition(ShipyardError):
    """Raised when a build target is moved through an illegal state change."""
