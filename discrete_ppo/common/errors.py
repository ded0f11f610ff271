from __future__ import annotations

from typing import Optional


# =============================================================================
# Error taxonomy
# =============================================================================
class LearnerError(RuntimeError):
    """
    Base class for errors raised by the training core.

    Each subclass declares whether it is *fatal* for a training run. Fatal errors
    are raised synchronously to the caller of the operation that detected them
    (policy construction, parameter copy, collection, checkpoint load). Deciding
    whether to abort the process is left to that caller, so every component stays
    testable without terminating the interpreter.

    Attributes
    ----------
    fatal : bool
        True if continuing the run after this error would corrupt training.
    """

    fatal: bool = True


class PolicyArchitectureError(LearnerError, ValueError):
    """
    Invalid layer specification, or parameter copy between mismatched policies.

    Also a ``ValueError`` so call sites that validate constructor arguments the
    usual way keep working.
    """


class DevicePlacementError(LearnerError):
    """Moving a network's parameters to the requested compute device failed."""


class WorkerInitError(LearnerError):
    """
    A collection worker could not be initialized (e.g., the environment factory raised).

    Parameters
    ----------
    message : str
        Human-readable description.
    worker_index : int, optional
        Index of the failing worker.
    """

    def __init__(self, message: str, *, worker_index: Optional[int] = None) -> None:
        super().__init__(message)
        self.worker_index = worker_index


class WorkerCrashedError(LearnerError):
    """A worker thread/actor died on an error that is not an environment error."""

    def __init__(self, message: str, *, worker_index: Optional[int] = None) -> None:
        super().__init__(message)
        self.worker_index = worker_index


class EnvRunnerError(LearnerError):
    """An environment kept failing after repeated episode restarts."""


class CheckpointFormatError(LearnerError):
    """A checkpoint or stats file is missing required fields or is not readable."""


class EnvStepError(LearnerError):
    """
    Recoverable failure of a single environment step or reset.

    Raised inside an env runner and absorbed there: the runner restarts the
    episode and counts the error in its per-worker report.
    """

    fatal = False


__all__ = [
    "LearnerError",
    "PolicyArchitectureError",
    "DevicePlacementError",
    "WorkerInitError",
    "WorkerCrashedError",
    "EnvRunnerError",
    "CheckpointFormatError",
    "EnvStepError",
]
