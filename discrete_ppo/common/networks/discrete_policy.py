from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

import torch as th
import torch.nn as nn

from .base_networks import BaseMLPNetwork
from ..errors import PolicyArchitectureError
from ..utils.network_utils import _move_to_device


# Every probability is clamped to at least this value so log-probs stay finite.
ACTION_MIN_PROB = 1e-11


@dataclass
class ActionResult:
    """
    Output of :meth:`DiscretePolicy.get_action`.

    Attributes
    ----------
    action : torch.Tensor
        Action index per batch row, shape ``(B,)``, int64, CPU, detached.
    log_prob : torch.Tensor
        Log-probability of each action, shape ``(B,)``, float, CPU, detached.
        Zero for deterministic (argmax) draws.
    """

    action: th.Tensor
    log_prob: th.Tensor


@dataclass
class BackpropResult:
    """
    Output of :meth:`DiscretePolicy.get_backprop_data`.

    Attributes
    ----------
    action_log_probs : torch.Tensor
        Log-probability of each given action, shape ``(B,)``, attached to the graph.
    entropy : torch.Tensor
        Mean per-row entropy (scalar), attached to the graph.
    """

    action_log_probs: th.Tensor
    entropy: th.Tensor


def _optional_action_vector(
    values: Optional[Union[Sequence[float], th.Tensor]],
    *,
    action_amount: int,
    name: str,
    device: th.device,
) -> Optional[th.Tensor]:
    if values is None:
        return None
    t = th.as_tensor(values, dtype=th.float32).detach().reshape(-1)
    if t.numel() != int(action_amount):
        raise ValueError(f"{name} must have {action_amount} entries, got {t.numel()}")
    return t.to(device)


# =============================================================================
# Discrete stochastic policy
# =============================================================================
class DiscretePolicy(BaseMLPNetwork):
    """
    Feed-forward categorical policy over a fixed set of discrete actions.

    Architecture: ``input -> (Linear -> ReLU) x len(layer_sizes) -> Linear(action_amount)``.
    The final layer produces raw scores with no activation.

    Parameters
    ----------
    input_amount : int
        Observation dimensionality.
    action_amount : int
        Number of discrete actions.
    layer_sizes : Sequence[int]
        Hidden widths, in order. Must be non-empty.
    device : str or torch.device, default="cpu"
        Compute device. All parameters are moved here at construction.
    temperature : float, default=1.0
        Scores are divided by this before the softmax. Values below 1 sharpen the
        distribution, values above 1 flatten it. Must be > 0.
    action_prob_bonuses : Sequence[float], optional
        Per-action amount added to the softmax output before renormalizing. Lets a
        caller bias sampling toward some actions without retraining.
    action_entropy_scales : Sequence[float], optional
        Per-action factor applied to the entropy terms before they are summed.
    init_type : str, default="orthogonal"
        Weight initialization scheme ("orthogonal", "xavier_uniform",
        "kaiming_uniform" or "default" for PyTorch's own init).

    Raises
    ------
    PolicyArchitectureError
        If ``layer_sizes`` is empty or ``action_amount``/``input_amount`` is not positive.
    DevicePlacementError
        If moving the parameters to ``device`` fails.
    ValueError
        If ``temperature <= 0`` or an optional vector has the wrong length.

    Notes
    -----
    - The bonus and entropy-scale vectors are fixed at setup time. They are plain
      optional tensors, not module buffers, so they do not enter ``state_dict()``.
    - Probabilities returned by :meth:`get_action_probs` are always clamped to
      ``[ACTION_MIN_PROB, 1]``, whether or not a bonus is configured.
    """

    def __init__(
        self,
        input_amount: int,
        action_amount: int,
        layer_sizes: Sequence[int],
        device: Union[str, th.device] = "cpu",
        *,
        temperature: float = 1.0,
        action_prob_bonuses: Optional[Sequence[float]] = None,
        action_entropy_scales: Optional[Sequence[float]] = None,
        init_type: str = "orthogonal",
    ) -> None:
        if int(input_amount) <= 0 or int(action_amount) <= 0:
            raise PolicyArchitectureError(
                f"input_amount and action_amount must be positive, got {input_amount}, {action_amount}"
            )
        if float(temperature) <= 0.0:
            raise ValueError(f"temperature must be > 0, got {temperature}")

        super().__init__(
            input_dim=int(input_amount),
            output_dim=int(action_amount),
            hidden_sizes=layer_sizes,
            activation_fn=nn.ReLU,
            init_type=init_type,
        )

        self.input_amount = int(input_amount)
        self.action_amount = int(action_amount)
        self.layer_sizes = tuple(self.hidden_sizes)
        self.temperature = float(temperature)
        self.init_type = str(init_type)

        self._device = _move_to_device(self, device)

        self.action_prob_bonuses: Optional[th.Tensor] = _optional_action_vector(
            action_prob_bonuses, action_amount=self.action_amount, name="action_prob_bonuses", device=self._device
        )
        self.action_entropy_scales: Optional[th.Tensor] = _optional_action_vector(
            action_entropy_scales, action_amount=self.action_amount, name="action_entropy_scales", device=self._device
        )

    # ---------------------------------------------------------------------
    # Distribution
    # ---------------------------------------------------------------------
    def get_output(self, obs: Any) -> th.Tensor:
        """
        Action distribution before clamping.

        Parameters
        ----------
        obs : array-like or torch.Tensor
            Observations, shape ``(B, input_amount)`` or ``(input_amount,)``.

        Returns
        -------
        torch.Tensor
            Probabilities, shape ``(B, action_amount)``; rows sum to 1.

        Notes
        -----
        With a bonus vector configured the bonus is added to the softmax output
        (never to the raw scores) and the result is renormalized once.
        """
        scores = self.forward(obs)
        probs = th.softmax(scores / self.temperature, dim=-1)

        if self.action_prob_bonuses is not None:
            probs = probs + self.action_prob_bonuses.view(1, -1)
            probs = probs / probs.sum(dim=-1, keepdim=True)

        return probs

    def get_action_probs(self, obs: Any) -> th.Tensor:
        """
        Clamped probabilities, shape ``(B, action_amount)``.

        Every entry is at least ``ACTION_MIN_PROB``, so ``log`` of the result is finite.
        """
        probs = self.get_output(obs).view(-1, self.action_amount)
        return probs.clamp(ACTION_MIN_PROB, 1.0)

    # ---------------------------------------------------------------------
    # Acting (no gradients)
    # ---------------------------------------------------------------------
    @th.no_grad()
    def get_action(self, obs: Any, deterministic: bool = False) -> ActionResult:
        """
        Choose one action per observation row.

        Parameters
        ----------
        obs : array-like or torch.Tensor
            Observations, shape ``(B, input_amount)`` or ``(input_amount,)``.
        deterministic : bool, default=False
            If True, take the argmax action and report a log-prob of 0.
            Otherwise draw once from the clamped categorical distribution.

        Returns
        -------
        ActionResult
            Flattened, detached CPU tensors. This path never participates in
            backpropagation.
        """
        probs = self.get_action_probs(obs)

        if deterministic:
            action = probs.argmax(dim=-1)
            log_prob = th.zeros(action.shape, dtype=probs.dtype, device=probs.device)
        else:
            action = th.multinomial(probs, 1, replacement=True).view(-1)
            log_prob = probs.log().gather(-1, action.view(-1, 1)).view(-1)

        return ActionResult(action=action.cpu().flatten(), log_prob=log_prob.cpu().flatten())

    # ---------------------------------------------------------------------
    # Training path (gradients kept)
    # ---------------------------------------------------------------------
    def get_backprop_data(self, obs: Any, acts: Any) -> BackpropResult:
        """
        Gradient-bearing log-probs of ``acts`` and mean entropy under current parameters.

        Parameters
        ----------
        obs : array-like or torch.Tensor
            Observations, shape ``(B, input_amount)``.
        acts : array-like or torch.Tensor
            Action indices, shape ``(B,)`` or ``(B, 1)``; cast to int64.

        Returns
        -------
        BackpropResult
            ``action_log_probs`` of shape ``(B,)`` and scalar ``entropy``, both on the
            policy device and attached to the autograd graph.

        Notes
        -----
        Entropy per row is ``-sum_a p(a) log p(a)`` over every action, not only the
        taken one. Configured entropy scales multiply the per-action terms before
        the sum.
        """
        probs = self.get_action_probs(obs)
        acts_t = th.as_tensor(acts, device=self._device).to(th.int64).view(-1, 1)
        if acts_t.shape[0] != probs.shape[0]:
            raise ValueError(f"acts batch {acts_t.shape[0]} does not match obs batch {probs.shape[0]}")

        log_probs = probs.log()
        action_log_probs = log_probs.gather(-1, acts_t).view(-1)

        entropy = -(log_probs * probs)
        if self.action_entropy_scales is not None:
            entropy = entropy * self.action_entropy_scales.view(1, -1)
        entropy = entropy.sum(dim=-1)

        return BackpropResult(
            action_log_probs=action_log_probs.to(self._device),
            entropy=entropy.mean(),
        )

    # ---------------------------------------------------------------------
    # Synchronization
    # ---------------------------------------------------------------------
    def _check_aligned(self, params: List[th.Tensor], *, what: str) -> List[nn.Parameter]:
        own = list(self.parameters())
        if len(own) != len(params):
            raise PolicyArchitectureError(
                f"{what}: parameter count mismatch ({len(own)} vs {len(params)}); policies must share an architecture."
            )
        for i, (a, b) in enumerate(zip(own, params)):
            if tuple(a.shape) != tuple(b.shape):
                raise PolicyArchitectureError(
                    f"{what}: shape mismatch at parameter {i} ({tuple(a.shape)} vs {tuple(b.shape)})."
                )
        return own

    def copy_to(self, other: "DiscretePolicy") -> None:
        """
        Overwrite every parameter of ``other`` with this policy's values.

        The copy is index-aligned and idempotent. Raises ``PolicyArchitectureError``
        if the two policies do not have the same parameter layout.
        """
        src = list(self.parameters())
        dst = other._check_aligned(src, what="copy_to")
        with th.no_grad():
            for d, s in zip(dst, src):
                d.copy_(s)

    def parameter_snapshot(self) -> List[th.Tensor]:
        """Ordered CPU clones of every parameter (safe to ship to another process)."""
        return [p.detach().cpu().clone() for p in self.parameters()]

    def load_parameter_snapshot(self, params: Sequence[th.Tensor]) -> None:
        """Inverse of :meth:`parameter_snapshot`, with the same checks as :meth:`copy_to`."""
        params = list(params)
        dst = self._check_aligned(params, what="load_parameter_snapshot")
        with th.no_grad():
            for d, s in zip(dst, params):
                d.copy_(s)

    def architecture(self) -> Dict[str, Any]:
        """Constructor kwargs (minus ``device``) needed to build an identical replica."""
        return {
            "input_amount": self.input_amount,
            "action_amount": self.action_amount,
            "layer_sizes": list(self.layer_sizes),
            "temperature": self.temperature,
            "action_prob_bonuses": (
                None if self.action_prob_bonuses is None else self.action_prob_bonuses.cpu().tolist()
            ),
            "action_entropy_scales": (
                None if self.action_entropy_scales is None else self.action_entropy_scales.cpu().tolist()
            ),
            "init_type": self.init_type,
        }
