from __future__ import annotations

from typing import Any, Sequence, Type

import torch as th
import torch.nn as nn

from ..utils.network_utils import _ensure_batch, _make_weights_init, _validate_hidden_sizes


# =============================================================================
# Feature Extractors
# =============================================================================
class MLPFeaturesExtractor(nn.Module):
    """
    Standard MLP trunk: (Linear -> Activation) for every hidden width.

    Parameters
    ----------
    input_dim : int
        Input dimensionality (observation size).
    hidden_sizes : Sequence[int]
        Hidden layer widths. Must contain at least one element.
    activation_fn : type[nn.Module], optional
        Activation module class inserted after each ``nn.Linear`` layer
        (default: ``nn.ReLU``).

    Attributes
    ----------
    net : nn.Sequential
        Sequential stack of the layers.
    out_dim : int
        Output feature dimensionality (= ``hidden_sizes[-1]``).

    Raises
    ------
    PolicyArchitectureError
        If ``hidden_sizes`` is empty or has non-positive widths.
    """

    def __init__(
        self,
        input_dim: int,
        hidden_sizes: Sequence[int],
        activation_fn: Type[nn.Module] = nn.ReLU,
    ) -> None:
        super().__init__()
        hs = _validate_hidden_sizes(hidden_sizes)

        layers: list[nn.Module] = []
        prev_dim = int(input_dim)
        for h in hs:
            layers.append(nn.Linear(prev_dim, h))
            layers.append(activation_fn())
            prev_dim = h

        self.net = nn.Sequential(*layers)
        self.out_dim = int(hs[-1])

    def forward(self, x: th.Tensor) -> th.Tensor:
        return self.net(x)


# =============================================================================
# MLP with a linear output head
# =============================================================================
class BaseMLPNetwork(nn.Module):
    """
    Trunk + linear head, shared by the policy and the critic.

    Parameters
    ----------
    input_dim : int
        Observation size.
    output_dim : int
        Width of the final linear layer (no activation).
    hidden_sizes : Sequence[int]
        Trunk widths.
    activation_fn : type[nn.Module], optional
        Trunk activation (default: ``nn.ReLU``).
    init_type : str, optional
        Weight init scheme passed to ``_make_weights_init`` (default: "orthogonal").
    gain : float, optional
        Init gain for the trunk (default: 1.0).
    head_gain : float, optional
        Init gain for the output layer (default: 1.0).

    Notes
    -----
    Parameter order is trunk layers first, then the head. Index-aligned parameter
    copies between two instances rely on this order.
    """

    def __init__(
        self,
        *,
        input_dim: int,
        output_dim: int,
        hidden_sizes: Sequence[int],
        activation_fn: Type[nn.Module] = nn.ReLU,
        init_type: str = "orthogonal",
        gain: float = 1.0,
        head_gain: float = 1.0,
    ) -> None:
        super().__init__()
        self.input_dim = int(input_dim)
        self.output_dim = int(output_dim)
        self.hidden_sizes = _validate_hidden_sizes(hidden_sizes)

        self.trunk = MLPFeaturesExtractor(self.input_dim, self.hidden_sizes, activation_fn)
        self.head = nn.Linear(self.trunk.out_dim, self.output_dim)

        self.trunk.apply(_make_weights_init(init_type=init_type, gain=gain))
        self.head.apply(_make_weights_init(init_type=init_type, gain=head_gain))

    @property
    def device(self) -> th.device:
        return next(self.parameters()).device

    def _ensure_batch(self, x: Any) -> th.Tensor:
        """Tensor on the module device, shape ``(B, input_dim)``."""
        return _ensure_batch(x, device=self.device)

    def forward(self, x: Any) -> th.Tensor:
        x = self._ensure_batch(x)
        return self.head(self.trunk(x))
