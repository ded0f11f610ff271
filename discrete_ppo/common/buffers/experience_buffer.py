from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator, Optional, Union

import numpy as np
import torch as th

from ..utils.common_utils import _to_tensor


# =============================================================================
# Batch: ExperienceBatch
# =============================================================================
@dataclass
class ExperienceBatch:
    """
    A batch of experience rows returned by :class:`ExperienceBuffer`.

    Attributes
    ----------
    states:
        Observations, shape ``(B, obs_size)``.
    actions:
        Action indices, shape ``(B,)``, int64.
    log_probs:
        Log-probabilities recorded at collection time, shape ``(B,)``.
    rewards:
        (Possibly scaled) rewards, shape ``(B,)``.
    values:
        Critic estimates at collection time, shape ``(B,)``.
    advantages:
        GAE advantages, shape ``(B,)``.
    """

    states: th.Tensor
    actions: th.Tensor
    log_probs: th.Tensor
    rewards: th.Tensor
    values: th.Tensor
    advantages: th.Tensor

    def __len__(self) -> int:
        return int(self.states.shape[0])

    @property
    def returns(self) -> th.Tensor:
        """Value targets, ``values + advantages``."""
        return self.values + self.advantages

    def slice(self, start: int, stop: int) -> "ExperienceBatch":
        """Rows ``[start, stop)`` as a new batch (views, no copy)."""
        return ExperienceBatch(
            states=self.states[start:stop],
            actions=self.actions[start:stop],
            log_probs=self.log_probs[start:stop],
            rewards=self.rewards[start:stop],
            values=self.values[start:stop],
            advantages=self.advantages[start:stop],
        )


# =============================================================================
# ExperienceBuffer (bounded FIFO of processed experience)
# =============================================================================
class ExperienceBuffer:
    """
    Bounded store of processed experience consumed by the PPO update.

    New experience is appended at the end; when the total exceeds ``max_size`` the
    oldest rows are dropped. Only the learner thread writes to the buffer.

    Parameters
    ----------
    max_size:
        Maximum number of rows kept.
    device:
        Torch device where rows are stored and batches are produced.
    seed:
        Optional seed for the shuffling RNG.

    Notes
    -----
    Expected usage pattern
    ----------------------
    1) Call :meth:`submit_experience` once or more per iteration.
    2) Iterate :meth:`get_all_batches_shuffled(batch_size)` each epoch.
    """

    _FIELDS = ("states", "actions", "log_probs", "rewards", "values", "advantages")

    def __init__(
        self,
        max_size: int,
        *,
        device: Union[str, th.device] = "cpu",
        seed: Optional[int] = None,
    ) -> None:
        if int(max_size) <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.max_size = int(max_size)
        self.device = th.device(device)
        self._rng = np.random.default_rng(seed)
        self.clear()

    def clear(self) -> None:
        self.states: Optional[th.Tensor] = None
        self.actions: Optional[th.Tensor] = None
        self.log_probs: Optional[th.Tensor] = None
        self.rewards: Optional[th.Tensor] = None
        self.values: Optional[th.Tensor] = None
        self.advantages: Optional[th.Tensor] = None

    @property
    def size(self) -> int:
        return 0 if self.states is None else int(self.states.shape[0])

    def __len__(self) -> int:
        return self.size

    def submit_experience(
        self,
        *,
        states: Any,
        actions: Any,
        log_probs: Any,
        rewards: Any,
        values: Any,
        advantages: Any,
    ) -> None:
        """
        Append rows and drop the oldest ones beyond ``max_size``.

        Raises
        ------
        ValueError
            If the inputs do not share the same leading dimension.
        """
        new = {
            "states": _to_tensor(states, self.device),
            "actions": _to_tensor(actions, self.device, dtype=th.int64).view(-1),
            "log_probs": _to_tensor(log_probs, self.device).view(-1),
            "rewards": _to_tensor(rewards, self.device).view(-1),
            "values": _to_tensor(values, self.device).view(-1),
            "advantages": _to_tensor(advantages, self.device).view(-1),
        }
        if new["states"].dim() == 1:
            new["states"] = new["states"].view(1, -1)

        n = int(new["states"].shape[0])
        for k, v in new.items():
            if int(v.shape[0]) != n:
                raise ValueError(f"submit_experience: {k} has {v.shape[0]} rows, expected {n}")
        if n == 0:
            return

        for k in self._FIELDS:
            cur = getattr(self, k)
            merged = new[k] if cur is None else th.cat([cur, new[k]], dim=0)
            if merged.shape[0] > self.max_size:
                merged = merged[-self.max_size :]
            setattr(self, k, merged)

    def _gather(self, idx: th.Tensor) -> ExperienceBatch:
        return ExperienceBatch(**{k: getattr(self, k)[idx] for k in self._FIELDS})

    def get_all_batches_shuffled(self, batch_size: int) -> Iterator[ExperienceBatch]:
        """
        Yield shuffled batches covering the buffer once.

        Parameters
        ----------
        batch_size:
            Rows per batch. Only full batches are produced; if the buffer holds fewer
            rows than ``batch_size``, a single batch with every row is produced.

        Raises
        ------
        ValueError
            If ``batch_size <= 0``.
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        size = self.size
        if size == 0:
            return

        perm = th.as_tensor(self._rng.permutation(size), dtype=th.int64, device=self.device)
        if size < batch_size:
            yield self._gather(perm)
            return

        for start in range(0, size - batch_size + 1, batch_size):
            yield self._gather(perm[start : start + batch_size])
