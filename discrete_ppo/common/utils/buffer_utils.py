from __future__ import annotations

from typing import Optional

import numpy as np


# =============================================================================
# GAE utility
# =============================================================================
def compute_gae(
    rewards: np.ndarray,
    values: np.ndarray,
    dones: np.ndarray,
    *,
    last_value: float,
    last_done: bool,
    gamma: float,
    gae_lambda: float,
) -> np.ndarray:
    """
    Compute Generalized Advantage Estimation (GAE-λ) for one trajectory.

    Parameters
    ----------
    rewards : np.ndarray
        Reward sequence, shape (T,).
    values : np.ndarray
        Value estimates V(s_t), shape (T,).
    dones : np.ndarray
        Terminal flags after each transition, shape (T,).
        Convention: dones[t] == 1 means the episode ended after step t.
    last_value : float
        Bootstrap value V(s_T) used at t=T-1 when ``last_done`` is False
        (the window was cut before the episode terminated).
    last_done : bool
        Whether the final transition was terminal. If True the bootstrap is 0.
    gamma : float
        Discount factor in [0, 1].
    gae_lambda : float
        GAE smoothing parameter λ in [0, 1].

    Returns
    -------
    advantages : np.ndarray
        Advantage estimates, shape (T,), float32.

    Notes
    -----
    δ_t = r_t + γ (1 - done_t) V_{t+1} - V_t
    A_t = δ_t + γ λ (1 - done_t) A_{t+1}
    """
    rewards = np.asarray(rewards, dtype=np.float32)
    values = np.asarray(values, dtype=np.float32)
    dones = np.asarray(dones, dtype=np.float32)

    if rewards.ndim != 1 or values.ndim != 1 or dones.ndim != 1:
        raise ValueError(
            f"rewards/values/dones must be 1D, got {rewards.shape}, {values.shape}, {dones.shape}"
        )
    if rewards.shape[0] != values.shape[0] or rewards.shape[0] != dones.shape[0]:
        raise ValueError(
            f"Shape mismatch: rewards={rewards.shape}, values={values.shape}, dones={dones.shape}"
        )
    if not (0.0 <= gamma <= 1.0):
        raise ValueError(f"gamma must be in [0, 1], got {gamma}")
    if not (0.0 <= gae_lambda <= 1.0):
        raise ValueError(f"gae_lambda must be in [0, 1], got {gae_lambda}")

    T = rewards.shape[0]
    advantages = np.zeros((T,), dtype=np.float32)
    bootstrap_v = 0.0 if bool(last_done) else float(last_value)

    gae = 0.0
    for t in reversed(range(T)):
        nonterminal = 1.0 - float(dones[t])
        v_next = bootstrap_v if (t == T - 1) else float(values[t + 1])

        delta = rewards[t] + gamma * nonterminal * v_next - float(values[t])
        gae = delta + gamma * gae_lambda * nonterminal * gae
        advantages[t] = gae

    return advantages


def discounted_returns(rewards: np.ndarray, gamma: float, *, bootstrap: float = 0.0) -> np.ndarray:
    """
    Discounted reward-to-go, G_t = r_t + γ G_{t+1}, with G_T = ``bootstrap``.

    Parameters
    ----------
    rewards : np.ndarray
        Shape (T,).
    gamma : float
        Discount factor in [0, 1].
    bootstrap : float, default=0.0
        Value assumed after the last reward.
    """
    rewards = np.asarray(rewards, dtype=np.float64).reshape(-1)
    out = np.zeros_like(rewards)
    running = float(bootstrap)
    for t in reversed(range(rewards.shape[0])):
        running = rewards[t] + gamma * running
        out[t] = running
    return out


def clip_rewards(rewards: np.ndarray, clip_range: Optional[float]) -> np.ndarray:
    """Clip to [-clip_range, clip_range]; ``None`` or non-positive disables clipping."""
    if clip_range is None or float(clip_range) <= 0.0:
        return rewards
    c = float(clip_range)
    return np.clip(rewards, -c, c)
