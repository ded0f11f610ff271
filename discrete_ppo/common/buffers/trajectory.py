from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional

import numpy as np


@dataclass
class Trajectory:
    """
    One contiguous window of a single episode, produced by one worker.

    The producing worker owns a trajectory until it is handed to the agent
    manager; after the learner merges it into the experience buffer it is no
    longer used.

    Attributes
    ----------
    states : np.ndarray
        Observations s_t, shape ``(T, obs_size)``, float32.
    actions : np.ndarray
        Action indices, shape ``(T,)``, int64.
    log_probs : np.ndarray
        Log π(a_t|s_t) recorded at collection time, shape ``(T,)``, float32.
    rewards : np.ndarray
        Rewards, shape ``(T,)``, float32.
    dones : np.ndarray
        Terminal flags, shape ``(T,)``, float32 in {0, 1}.
    truncated : np.ndarray
        Window/time-limit cut flags, shape ``(T,)``, float32 in {0, 1}.
    next_states : np.ndarray
        Observations s_{t+1}, shape ``(T, obs_size)``. The last row is the
        bootstrap state when the window ends without a terminal.
    worker_index : int
        Index of the producing worker.
    """

    states: np.ndarray
    actions: np.ndarray
    log_probs: np.ndarray
    rewards: np.ndarray
    dones: np.ndarray
    truncated: np.ndarray
    next_states: np.ndarray
    worker_index: int = 0

    def __len__(self) -> int:
        return int(self.rewards.shape[0])

    @property
    def terminal(self) -> bool:
        """True if the window ends with the episode terminating (no bootstrap)."""
        return len(self) > 0 and bool(self.dones[-1] > 0.5)

    @property
    def final_next_state(self) -> np.ndarray:
        return self.next_states[-1]


class TrajectoryBuilder:
    """
    Append-only step recorder that emits :class:`Trajectory` windows.

    Parameters
    ----------
    worker_index : int
        Stored on every emitted trajectory.
    """

    def __init__(self, worker_index: int = 0) -> None:
        self.worker_index = int(worker_index)
        self._clear()

    def _clear(self) -> None:
        self._states: List[np.ndarray] = []
        self._actions: List[int] = []
        self._log_probs: List[float] = []
        self._rewards: List[float] = []
        self._dones: List[float] = []
        self._truncated: List[float] = []
        self._next_states: List[np.ndarray] = []

    def __len__(self) -> int:
        return len(self._rewards)

    def add(
        self,
        state: Any,
        action: int,
        log_prob: float,
        reward: float,
        done: bool,
        truncated: bool,
        next_state: Any,
    ) -> None:
        self._states.append(np.asarray(state, dtype=np.float32).reshape(-1))
        self._actions.append(int(action))
        self._log_probs.append(float(log_prob))
        self._rewards.append(float(reward))
        self._dones.append(1.0 if done else 0.0)
        self._truncated.append(1.0 if truncated else 0.0)
        self._next_states.append(np.asarray(next_state, dtype=np.float32).reshape(-1))

    def mark_truncated(self) -> None:
        """Flag the latest step as a window cut (e.g., after an environment error)."""
        if self._truncated:
            self._truncated[-1] = 1.0

    def flush(self) -> Optional[Trajectory]:
        """Emit the recorded steps as a trajectory and start a new window. None if empty."""
        if not self._rewards:
            return None

        traj = Trajectory(
            states=np.stack(self._states).astype(np.float32),
            actions=np.asarray(self._actions, dtype=np.int64),
            log_probs=np.asarray(self._log_probs, dtype=np.float32),
            rewards=np.asarray(self._rewards, dtype=np.float32),
            dones=np.asarray(self._dones, dtype=np.float32),
            truncated=np.asarray(self._truncated, dtype=np.float32),
            next_states=np.stack(self._next_states).astype(np.float32),
            worker_index=self.worker_index,
        )
        self._clear()
        return traj
