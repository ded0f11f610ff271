from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from discrete_ppo.common.utils import Report


# =============================================================================
# Minimal spaces/envs (no gym dependency)
# =============================================================================
class DummyDiscreteSpace:
    """Minimal Discrete(n) space with sample()."""

    def __init__(self, n: int, seed: int = 0) -> None:
        self.n = int(n)
        self._rng = np.random.RandomState(int(seed))

    def sample(self) -> int:
        return int(self._rng.randint(0, self.n))


class DummyBoxSpace:
    """Minimal Box(shape,) space with sample()."""

    def __init__(self, shape: Tuple[int, ...], low: float = -1.0, high: float = 1.0, seed: int = 0) -> None:
        self.shape = tuple(int(x) for x in shape)
        self.low = np.full(self.shape, float(low), dtype=np.float32)
        self.high = np.full(self.shape, float(high), dtype=np.float32)
        self._rng = np.random.RandomState(int(seed))

    def sample(self) -> np.ndarray:
        return self._rng.uniform(low=self.low, high=self.high).astype(np.float32)


@dataclass
class DummyLineEnv:
    """
    Tiny episodic env with discrete actions:

    - obs: (obs_dim,) float32, drifting left/right with the action
    - actions: {0, ..., n_actions - 1}
    - reward: 1.0 for the last action, 0.0 otherwise
    - terminates after ``horizon`` steps (``truncate=True`` reports a time-limit cut instead)
    """

    obs_dim: int = 4
    n_actions: int = 3
    horizon: int = 20
    truncate: bool = False
    seed: int = 0

    closed: bool = field(default=False, init=False)
    reset_seeds: List[Optional[int]] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        self.observation_space = DummyBoxSpace(shape=(self.obs_dim,), seed=self.seed)
        self.action_space = DummyDiscreteSpace(n=self.n_actions, seed=self.seed + 123)
        self._rng = np.random.RandomState(self.seed + 999)
        self._t = 0
        self._obs = np.zeros((self.obs_dim,), dtype=np.float32)

    def reset(self, seed: Optional[int] = None) -> Tuple[np.ndarray, Dict[str, Any]]:
        self.reset_seeds.append(seed)
        if seed is not None:
            self._rng = np.random.RandomState(int(seed))
        self._t = 0
        self._obs = (self._rng.randn(self.obs_dim) * 0.1).astype(np.float32)
        return self._obs.copy(), {}

    def step(self, action: int) -> Tuple[np.ndarray, float, bool, bool, Dict[str, Any]]:
        a = int(action)
        if not (0 <= a < self.n_actions):
            raise ValueError(f"invalid action {a}")
        drift = 0.05 if a == self.n_actions - 1 else -0.05
        noise = self._rng.randn(self.obs_dim).astype(np.float32) * 0.01
        self._obs = np.clip(self._obs + drift + noise, -1.0, 1.0).astype(np.float32)

        self._t += 1
        reward = 1.0 if a == self.n_actions - 1 else 0.0
        done = self._t >= int(self.horizon)
        terminated = done and not self.truncate
        truncated = done and self.truncate
        return self._obs.copy(), float(reward), bool(terminated), bool(truncated), {"t": self._t}

    def close(self) -> None:
        self.closed = True


@dataclass
class FlakyEnv(DummyLineEnv):
    """``DummyLineEnv`` whose ``step`` raises every ``fail_every``-th call."""

    fail_every: int = 7
    calls: int = field(default=0, init=False)

    def step(self, action: int) -> Tuple[np.ndarray, float, bool, bool, Dict[str, Any]]:
        self.calls += 1
        if self.calls % int(self.fail_every) == 0:
            raise RuntimeError("simulated env failure")
        return super().step(action)


class AlwaysFailingEnv(DummyLineEnv):
    def step(self, action: int) -> Tuple[np.ndarray, float, bool, bool, Dict[str, Any]]:
        raise RuntimeError("env is broken")


def make_env_fn(**kwargs: Any) -> Callable[[int], DummyLineEnv]:
    """Factory seeding each worker's env with its index."""

    def _make(worker_index: int) -> DummyLineEnv:
        return DummyLineEnv(seed=int(worker_index), **kwargs)

    return _make


def broken_env_fn(worker_index: int) -> Any:
    raise OSError(f"cannot create env {worker_index}")


# =============================================================================
# Recording collaborators
# =============================================================================
class RecordingSender:
    """Stand-in for MetricSender capturing (step, report) pairs."""

    def __init__(self) -> None:
        self.sent: List[Tuple[int, Report]] = []
        self.pbar: Any = None
        self.logger: Any = None

    def send(self, report: Report, step: int) -> Dict[str, float]:
        self.sent.append((int(step), report))
        return report.scalars()

    def close(self) -> None:
        return
