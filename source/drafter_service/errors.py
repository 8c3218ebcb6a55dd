from __future__ import annotations


class OrchestratorError(Exception):
    """Base for every lifecycle failure surfaced to API callers."""

    status_code: int = 500

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(OrchestratorError):
    status_code = 422


class NotFound(OrchestratorError):
    status_code = 404

    def __init__(self, name: str) -> None:
        super().__init__(f"VM {name!r} not found")
        self.name = name


class StateConflict(OrchestratorError):
    status_code = 409


class TransitionInProgress(StateConflict):
    def __init__(self, name: str) -> None:
        super().__init__(f"transition already in progress for VM {name!r}")
        self.name = name


class CapacityExceeded(StateConflict):
    pass


class LaunchError(OrchestratorError):
    """The subsystem process could not be spawned at all."""

    status_code = 502


class SubsystemCrashed(OrchestratorError):
    """The subsystem spawned but exited before becoming ready."""

    status_code = 502


class ReadinessTimeout(OrchestratorError):
    """The subsystem is alive but never became ready before its deadline."""

    status_code = 504


class TerminationError(OrchestratorError):
    pass
