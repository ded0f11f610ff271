from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Sequence, Union

import torch as th

from ..common.errors import CheckpointFormatError
from ..common.networks import DiscretePolicy, ValueNetwork
from ..common.utils.common_utils import _to_cpu_state_dict


class PPOHead:
    """
    Actor-critic pair used by discrete PPO.

    The head owns the master :class:`DiscretePolicy` (actor) and a
    :class:`ValueNetwork` (critic). Optimizers live in :class:`PPOCore`; the head
    only carries weights and construction metadata.

    Parameters
    ----------
    obs_size : int
        Flattened observation dimensionality.
    action_amount : int
        Number of discrete actions.
    policy_layer_sizes, critic_layer_sizes : Sequence[int]
        Hidden widths of the actor and critic MLPs.
    device : str | torch.device, default="cpu"
        Compute device for both networks.
    temperature : float, default=1.0
        Softmax temperature of the policy.
    action_prob_bonuses, action_entropy_scales : Sequence[float], optional
        Per-action vectors forwarded to :class:`DiscretePolicy`.
    init_type : str, default="orthogonal"
        Weight initializer for both networks.
    """

    def __init__(
        self,
        *,
        obs_size: int,
        action_amount: int,
        policy_layer_sizes: Sequence[int] = (256, 256, 256),
        critic_layer_sizes: Sequence[int] = (256, 256, 256),
        device: Union[str, th.device] = "cpu",
        temperature: float = 1.0,
        action_prob_bonuses: Optional[Sequence[float]] = None,
        action_entropy_scales: Optional[Sequence[float]] = None,
        init_type: str = "orthogonal",
    ) -> None:
        self.obs_size = int(obs_size)
        self.action_amount = int(action_amount)

        self.policy = DiscretePolicy(
            self.obs_size,
            self.action_amount,
            policy_layer_sizes,
            device,
            temperature=temperature,
            action_prob_bonuses=action_prob_bonuses,
            action_entropy_scales=action_entropy_scales,
            init_type=init_type,
        )
        self.critic = ValueNetwork(self.obs_size, critic_layer_sizes, device, init_type=init_type)
        self.device = self.policy.device

    # =============================================================================
    # Serialization
    # =============================================================================
    def _export_kwargs(self) -> Dict[str, Any]:
        kw = self.policy.architecture()
        return {
            "obs_size": self.obs_size,
            "action_amount": self.action_amount,
            "policy_layer_sizes": kw["layer_sizes"],
            "critic_layer_sizes": list(self.critic.layer_sizes),
            "temperature": kw["temperature"],
            "init_type": kw["init_type"],
        }

    def state_dict(self) -> Dict[str, Any]:
        return {
            "kwargs": self._export_kwargs(),
            "policy": _to_cpu_state_dict(self.policy.state_dict()),
            "critic": _to_cpu_state_dict(self.critic.state_dict()),
        }

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        """
        Load actor and critic weights into the existing networks.

        Raises
        ------
        CheckpointFormatError
            If required keys are missing or tensor shapes do not match.
        """
        if not isinstance(state, Mapping) or "policy" not in state or "critic" not in state:
            raise CheckpointFormatError("PPOHead state must contain 'policy' and 'critic'.")
        try:
            self.policy.load_state_dict(state["policy"])
            self.critic.load_state_dict(state["critic"])
        except (RuntimeError, KeyError, TypeError) as e:
            raise CheckpointFormatError(f"PPOHead weights do not match the network layout: {e}") from e
