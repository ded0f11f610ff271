from __future__ import annotations

from typing import Optional, Sequence, Union

import torch as th

from .core import PPOCore
from .head import PPOHead


def ppo(
    *,
    # -------------------------------------------------------------------------
    # Environment I/O sizes
    # -------------------------------------------------------------------------
    obs_size: int,
    action_amount: int,
    device: Union[str, th.device] = "cpu",
    # -------------------------------------------------------------------------
    # Network (head) hyperparameters
    # -------------------------------------------------------------------------
    policy_layer_sizes: Sequence[int] = (256, 256, 256),
    critic_layer_sizes: Sequence[int] = (256, 256, 256),
    temperature: float = 1.0,
    action_prob_bonuses: Optional[Sequence[float]] = None,
    action_entropy_scales: Optional[Sequence[float]] = None,
    init_type: str = "orthogonal",
    # -------------------------------------------------------------------------
    # PPO update (core) hyperparameters
    # -------------------------------------------------------------------------
    epochs: int = 2,
    batch_size: int = 50_000,
    mini_batch_size: int = 50_000,
    clip_range: float = 0.2,
    ent_coef: float = 0.005,
    vf_coef: float = 1.0,
    policy_lr: float = 3e-4,
    critic_lr: float = 3e-4,
    optimizer: str = "adam",
    max_grad_norm: float = 0.5,
    normalize_advantages: bool = False,
) -> PPOCore:
    """
    Build a discrete PPO update engine (head + core).

    Returns
    -------
    core : PPOCore
        Update engine; the actor-critic pair is reachable as ``core.head``.
    """
    head = PPOHead(
        obs_size=int(obs_size),
        action_amount=int(action_amount),
        policy_layer_sizes=tuple(policy_layer_sizes),
        critic_layer_sizes=tuple(critic_layer_sizes),
        device=device,
        temperature=float(temperature),
        action_prob_bonuses=action_prob_bonuses,
        action_entropy_scales=action_entropy_scales,
        init_type=str(init_type),
    )

    return PPOCore(
        head=head,
        epochs=int(epochs),
        batch_size=int(batch_size),
        mini_batch_size=int(mini_batch_size),
        clip_range=float(clip_range),
        ent_coef=float(ent_coef),
        vf_coef=float(vf_coef),
        policy_lr=float(policy_lr),
        critic_lr=float(critic_lr),
        optimizer=str(optimizer),
        max_grad_norm=float(max_grad_norm),
        normalize_advantages=bool(normalize_advantages),
    )
