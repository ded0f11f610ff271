from __future__ import annotations

from typing import Any, Callable, Dict, Iterable

import torch as th
import torch.nn as nn
from torch.optim import Optimizer


# =============================================================================
# Registry
# =============================================================================
_OPTIMIZERS: Dict[str, Callable[..., Optimizer]] = {
    "adam": th.optim.Adam,
    "adamw": th.optim.AdamW,
    "sgd": th.optim.SGD,
    "rmsprop": th.optim.RMSprop,
}


def _normalize_name(name: str) -> str:
    return str(name).lower().strip().replace("-", "").replace("_", "")


def build_optimizer(params: Iterable[nn.Parameter], *, name: str = "adam", lr: float = 3e-4, **kwargs: Any) -> Optimizer:
    """
    Build the optimizer of one PPO network.

    Parameters
    ----------
    params : Iterable[nn.Parameter]
        Parameters of the actor or of the critic.
    name : str, default="adam"
        One of "adam", "adamw", "sgd", "rmsprop" (case, "-" and "_" ignored).
    lr : float, default=3e-4
        Learning rate; must be positive.
    **kwargs
        Extra keyword arguments of the torch optimizer (``eps``, ``momentum``, ...).

    Raises
    ------
    ValueError
        If ``name`` is unknown or ``lr <= 0``.
    """
    if lr <= 0:
        raise ValueError(f"lr must be > 0, got: {lr}")
    factory = _OPTIMIZERS.get(_normalize_name(name))
    if factory is None:
        raise ValueError(f"Unknown optimizer: {name!r}. Use {'|'.join(_OPTIMIZERS)}.")
    return factory(params, lr=float(lr), **kwargs)


def set_learning_rate(opt: Optimizer, lr: float) -> None:
    """Overwrite ``lr`` of every param group in place."""
    if lr <= 0:
        raise ValueError(f"lr must be > 0, got: {lr}")
    for group in opt.param_groups:
        group["lr"] = float(lr)


def clip_grad_norm(parameters: Iterable[nn.Parameter], max_norm: float) -> float:
    """
    Clip the global L2 gradient norm in place.

    Returns the norm measured before clipping, or 0.0 when ``max_norm <= 0``
    (clipping disabled).
    """
    if max_norm <= 0:
        return 0.0
    total = nn.utils.clip_grad_norm_(list(parameters), float(max_norm))
    return float(total)
