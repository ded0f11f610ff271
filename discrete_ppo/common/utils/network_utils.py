from __future__ import annotations

from typing import Any, Callable, Sequence, Tuple, Union

import math

import torch as th
import torch.nn as nn

from ..errors import DevicePlacementError, PolicyArchitectureError


# =============================================================================
# Network utilities
# =============================================================================
def _validate_hidden_sizes(hidden_sizes: Sequence[int]) -> Tuple[int, ...]:
    """
    Validate an MLP hidden layer size specification.

    Parameters
    ----------
    hidden_sizes : Sequence[int]
        Hidden layer sizes (e.g., (64, 64) or [256, 256]).

    Returns
    -------
    hs : Tuple[int, ...]
        Validated sizes as a tuple of positive integers.

    Raises
    ------
    PolicyArchitectureError
        If empty or contains non-positive entries.
    TypeError
        If entries cannot be cast to int.
    """
    hs = tuple(int(h) for h in hidden_sizes)
    if len(hs) == 0:
        raise PolicyArchitectureError("hidden layer sizes must have at least one layer (e.g., (64, 64)).")
    if any(h <= 0 for h in hs):
        raise PolicyArchitectureError(f"hidden layer sizes must be positive integers, got: {hs}")
    return hs


def _make_weights_init(
    init_type: str = "orthogonal",
    gain: float = 1.0,
    bias: float = 0.0,
) -> Callable[[nn.Module], None]:
    """
    Create an initializer function compatible with ``nn.Module.apply()``.

    Parameters
    ----------
    init_type : str, default="orthogonal"
        One of "orthogonal", "xavier_uniform", "kaiming_uniform", "default".
        ``"default"`` keeps PyTorch's own ``nn.Linear`` initialization.
    gain : float, default=1.0
        Gain for orthogonal/Xavier initializers.
    bias : float, default=0.0
        Constant for linear biases (ignored with ``"default"``).

    Returns
    -------
    init_fn : Callable[[nn.Module], None]
        Function intended to be used as ``model.apply(init_fn)``.

    Raises
    ------
    ValueError
        If ``init_type`` is unknown.
    """
    name = str(init_type).lower().strip()
    if name not in ("orthogonal", "xavier_uniform", "kaiming_uniform", "default"):
        raise ValueError(f"Unknown init_type: {init_type!r}")
    gain = float(gain)
    bias = float(bias)

    def init_fn(module: nn.Module) -> None:
        if not isinstance(module, nn.Linear) or name == "default":
            return

        if name == "orthogonal":
            nn.init.orthogonal_(module.weight, gain=gain)
        elif name == "xavier_uniform":
            nn.init.xavier_uniform_(module.weight, gain=gain)
        else:
            nn.init.kaiming_uniform_(module.weight, a=math.sqrt(5.0))

        if module.bias is not None:
            nn.init.constant_(module.bias, bias)

    return init_fn


def _move_to_device(module: nn.Module, device: Union[str, th.device]) -> th.device:
    """
    Move ``module`` to ``device`` and return the resolved ``torch.device``.

    Raises
    ------
    DevicePlacementError
        If the device string is invalid or the move fails (e.g., CUDA requested on a
        machine without CUDA).
    """
    try:
        dev = th.device(device)
        module.to(dev)
    except (RuntimeError, AssertionError, TypeError, ValueError) as e:
        raise DevicePlacementError(f"Failed to place {type(module).__name__} on device {device!r}: {e}") from e
    return dev


# =============================================================================
# Input shape/device normalization
# =============================================================================
def _ensure_batch(x: Any, device: Union[th.device, str]) -> th.Tensor:
    """
    Convert input to a floating-point tensor on ``device`` with a batch dimension.

    - a single sample (D,)  -> (1, D)
    - a batch        (B, D) -> unchanged

    Parameters
    ----------
    x : Any
        Tensor, numpy array, list/tuple or scalar.
    device : torch.device or str
        Target device.

    Returns
    -------
    x_t : torch.Tensor
        Floating-point tensor on ``device``.
    """
    x_t = x if isinstance(x, th.Tensor) else th.as_tensor(x)

    if not x_t.is_floating_point():
        x_t = x_t.float()

    x_t = x_t.to(device)

    if x_t.dim() == 0:
        x_t = x_t.view(1, 1)
    elif x_t.dim() == 1:
        x_t = x_t.unsqueeze(0)

    return x_t
