from __future__ import annotations

from typing import Any, Dict, Mapping, Tuple

import numpy as np


# =============================================================================
# Running mean / variance (Welford, mergeable)
# =============================================================================
class RunningStat:
    """
    Online mean/variance accumulator (Welford's algorithm).

    Samples are folded in incrementally and the statistics are never recomputed
    from scratch. Batches are merged with the parallel form of the update
    (Chan et al.), so feeding one sequence in different groupings produces the
    same final mean and variance up to floating-point rounding.

    Parameters
    ----------
    shape : Tuple[int, ...], default=()
        Shape of a single sample (excluding the batch dimension). ``()`` tracks
        scalar samples.

    Attributes
    ----------
    count : int
        Number of samples seen so far.
    mean : np.ndarray
        Running mean, shape = ``shape``.
    m2 : np.ndarray
        Running sum of squared deviations from the mean, shape = ``shape``.

    Notes
    -----
    - Internally uses float64.
    - ``var`` is the unbiased sample variance ``m2 / (count - 1)``.
    - ``std`` never returns zero: with fewer than two samples, or along
      dimensions whose variance is exactly zero, it reports 1. This keeps
      divisions by the std safe when used to scale returns.
    """

    def __init__(self, shape: Tuple[int, ...] = ()) -> None:
        self.shape = tuple(int(s) for s in shape)
        self.reset()

    def reset(self) -> None:
        """Forget all samples."""
        self.count = 0
        self.mean = np.zeros(self.shape, dtype=np.float64)
        self.m2 = np.zeros(self.shape, dtype=np.float64)

    # ---------------------------------------------------------------------
    # Updates
    # ---------------------------------------------------------------------
    def increment(self, samples: Any) -> None:
        """
        Fold a batch of samples into the statistics.

        Parameters
        ----------
        samples : array-like
            Shape ``(N, *shape)``, or ``shape`` itself for a single sample. For
            scalar stats a flat sequence ``(N,)`` is accepted.

        Raises
        ------
        ValueError
            If the trailing dimensions do not match ``shape``.
        """
        x = np.asarray(samples, dtype=np.float64)

        if x.shape == self.shape:
            x = x[None, ...]

        if x.ndim != len(self.shape) + 1 or tuple(x.shape[1:]) != self.shape:
            raise ValueError(
                f"Invalid sample shape for RunningStat{self.shape}: got {x.shape}"
            )

        n = int(x.shape[0])
        if n == 0:
            return

        batch_mean = x.mean(axis=0)
        batch_m2 = np.square(x - batch_mean).sum(axis=0)
        self._merge(batch_mean, batch_m2, n)

    def increment_from_moments(self, *, mean: Any, m2: Any, count: int) -> None:
        """
        Merge precomputed moments (e.g., produced by another ``RunningStat``).

        Parameters
        ----------
        mean : array-like
            Mean of the other population, shape = ``shape``.
        m2 : array-like
            Sum of squared deviations of the other population, shape = ``shape``.
        count : int
            Size of the other population. Zero is a no-op.
        """
        count = int(count)
        if count < 0:
            raise ValueError(f"count must be >= 0, got {count}")
        if count == 0:
            return

        mean = np.asarray(mean, dtype=np.float64).reshape(self.shape)
        m2 = np.asarray(m2, dtype=np.float64).reshape(self.shape)
        self._merge(mean, m2, count)

    def merge(self, other: "RunningStat") -> None:
        """Fold another accumulator of the same shape into this one."""
        if other.shape != self.shape:
            raise ValueError(f"Shape mismatch: {self.shape} vs {other.shape}")
        self.increment_from_moments(mean=other.mean, m2=other.m2, count=other.count)

    def _merge(self, batch_mean: np.ndarray, batch_m2: np.ndarray, batch_count: int) -> None:
        # numpy reductions over axis 0 of a (N,) batch give 0-d scalars, not arrays
        batch_mean = np.array(batch_mean, dtype=np.float64).reshape(self.shape)
        batch_m2 = np.array(batch_m2, dtype=np.float64).reshape(self.shape)
        if self.count == 0:
            self.mean = batch_mean
            self.m2 = batch_m2
            self.count = int(batch_count)
            return

        tot = self.count + batch_count
        delta = batch_mean - self.mean

        self.mean = np.asarray(self.mean + delta * (batch_count / tot), dtype=np.float64)
        self.m2 = np.asarray(self.m2 + batch_m2 + np.square(delta) * (self.count * batch_count / tot), dtype=np.float64)
        self.count = tot

    # ---------------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------------
    @property
    def var(self) -> np.ndarray:
        """Unbiased sample variance; zeros until two samples were seen."""
        if self.count < 2:
            return np.zeros(self.shape, dtype=np.float64)
        return np.asarray(self.m2 / float(self.count - 1), dtype=np.float64)

    @property
    def std(self) -> np.ndarray:
        """Sample standard deviation with zero entries replaced by 1."""
        if self.count < 2:
            return np.ones(self.shape, dtype=np.float64)
        var = self.var
        return np.sqrt(np.where(var == 0.0, 1.0, var))

    # ---------------------------------------------------------------------
    # Serialization
    # ---------------------------------------------------------------------
    def state_dict(self) -> Dict[str, Any]:
        """
        JSON-friendly snapshot of the accumulator.

        Returns
        -------
        Dict[str, Any]
            Keys: ``shape``, ``count``, ``mean``, ``m2`` (nested lists).
        """
        return {
            "shape": list(self.shape),
            "count": int(self.count),
            "mean": self.mean.tolist(),
            "m2": self.m2.tolist(),
        }

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        """
        Restore from :meth:`state_dict` output.

        Raises
        ------
        KeyError
            If a required key is missing.
        ValueError
            If the stored shape does not match ``shape``.
        """
        shape = tuple(int(s) for s in state["shape"])
        if shape != self.shape:
            raise ValueError(f"RunningStat shape mismatch: stored {shape}, expected {self.shape}")

        count = int(state["count"])
        if count < 0:
            raise ValueError(f"RunningStat count must be >= 0, got {count}")

        self.count = count
        self.mean = np.asarray(state["mean"], dtype=np.float64).reshape(self.shape)
        self.m2 = np.asarray(state["m2"], dtype=np.float64).reshape(self.shape)

    def __repr__(self) -> str:
        return f"RunningStat(shape={self.shape}, count={self.count}, mean={self.mean}, std={self.std})"
