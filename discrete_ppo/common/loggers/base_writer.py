from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Mapping, Optional


class Writer(ABC):
    """
    Sink for flat rows of scalar metrics.

    A row maps metric names to floats and carries the meta keys ``step``,
    ``wall_time`` and ``timestamp`` added by :class:`Logger`. Implementations
    raise on failure; :class:`SafeWriter` is the place where failures are
    isolated from training.
    """

    @abstractmethod
    def write(self, row: Mapping[str, float]) -> None:
        raise NotImplementedError

    @abstractmethod
    def flush(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        """Release resources. Must be idempotent."""
        raise NotImplementedError


class SafeWriter(Writer):
    """
    Wrapper that keeps writer failures away from the training loop.

    Exceptions of the inner writer are not propagated. The text of each failure
    is kept in :attr:`errors` so callers can inspect what was dropped.

    Parameters
    ----------
    inner : Writer
        Wrapped writer.
    name : str, optional
        Label used in recorded errors (default: inner class name).
    """

    def __init__(self, inner: Writer, *, name: Optional[str] = None) -> None:
        self._inner = inner
        self._name = name or inner.__class__.__name__
        self.errors: List[str] = []

    def _record(self, what: str, err: Exception) -> None:
        self.errors.append(f"{self._name}.{what}: {type(err).__name__}: {err}")

    def write(self, row: Mapping[str, float]) -> None:
        try:
            self._inner.write(row)
        except Exception as e:
            self._record("write", e)

    def flush(self) -> None:
        try:
            self._inner.flush()
        except Exception as e:
            self._record("flush", e)

    def close(self) -> None:
        try:
            self._inner.close()
        except Exception as e:
            self._record("close", e)
