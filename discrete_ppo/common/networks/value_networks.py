from __future__ import annotations

from typing import Any, Sequence, Union

import torch as th
import torch.nn as nn

from .base_networks import BaseMLPNetwork
from ..utils.network_utils import _move_to_device


# =============================================================================
# V(s)
# =============================================================================
class ValueNetwork(BaseMLPNetwork):
    """
    State-value function network V(s) used as the PPO critic.

    Parameters
    ----------
    input_amount : int
        Observation dimensionality.
    layer_sizes : Sequence[int]
        Trunk hidden sizes.
    device : str or torch.device, default="cpu"
        Compute device.
    init_type : str, optional
        Weight initializer name, by default "orthogonal".

    Returns
    -------
    v : torch.Tensor
        ``forward`` returns value estimates of shape (B, 1).
    """

    def __init__(
        self,
        input_amount: int,
        layer_sizes: Sequence[int],
        device: Union[str, th.device] = "cpu",
        *,
        init_type: str = "orthogonal",
    ) -> None:
        super().__init__(
            input_dim=int(input_amount),
            output_dim=1,
            hidden_sizes=layer_sizes,
            activation_fn=nn.ReLU,
            init_type=init_type,
        )
        self.input_amount = int(input_amount)
        self.layer_sizes = tuple(self.hidden_sizes)
        self._device = _move_to_device(self, device)

    @th.no_grad()
    def predict(self, obs: Any) -> th.Tensor:
        """Detached value estimates, shape (B,), on CPU."""
        return self.forward(obs).view(-1).cpu()
