from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

import time

import torch as th
import torch.nn.functional as F
from torch.nn.utils import parameters_to_vector

from ..common.buffers import ExperienceBatch, ExperienceBuffer
from ..common.optimizers import build_optimizer, clip_grad_norm, set_learning_rate
from ..common.utils import Report
from .head import PPOHead


class PPOCore:
    """
    PPO update engine for discrete action spaces.

    One call to :meth:`learn` runs ``epochs`` passes over the experience buffer.
    Each pass draws shuffled batches of ``batch_size`` rows; a batch is split into
    minibatches of ``mini_batch_size`` whose scaled losses are accumulated before
    a single optimizer step for the actor and the critic.

    Loss per minibatch
    ------------------
    - ratio         = exp(new_logp - old_logp)
    - policy loss   = -mean(min(ratio * A, clip(ratio, 1-eps, 1+eps) * A))
    - value loss    = MSE(V(s), values + advantages)
    - total         = policy_loss - ent_coef * entropy + vf_coef * value_loss

    The actor and critic have disjoint parameters, so ``vf_coef`` only rescales
    the critic gradient.

    Parameters
    ----------
    head : PPOHead
        Actor-critic pair updated in place.
    epochs : int, default=2
        Passes over the buffer per :meth:`learn` call.
    batch_size, mini_batch_size : int
        Rows per optimizer step and rows per forward/backward chunk.
    clip_range : float, default=0.2
        PPO ratio clip epsilon.
    ent_coef : float, default=0.005
        Entropy bonus coefficient.
    vf_coef : float, default=1.0
        Value loss coefficient.
    policy_lr, critic_lr : float
        Learning rates of the two optimizers.
    optimizer : str, default="adam"
        Optimizer name understood by :func:`build_optimizer`.
    max_grad_norm : float, default=0.5
        Global grad-norm clip over actor and critic parameters (``<= 0`` disables).
    normalize_advantages : bool, default=False
        Standardize advantages inside each minibatch.
    """

    def __init__(
        self,
        *,
        head: PPOHead,
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
    ) -> None:
        self.head = head
        self.policy = head.policy
        self.critic = head.critic
        self.device = head.device

        self.epochs = int(epochs)
        self.batch_size = int(batch_size)
        self.mini_batch_size = int(mini_batch_size)
        self.clip_range = float(clip_range)
        self.ent_coef = float(ent_coef)
        self.vf_coef = float(vf_coef)
        self.max_grad_norm = float(max_grad_norm)
        self.normalize_advantages = bool(normalize_advantages)

        if self.epochs <= 0:
            raise ValueError(f"epochs must be > 0, got {self.epochs}")
        if self.batch_size <= 0 or self.mini_batch_size <= 0:
            raise ValueError(f"batch sizes must be > 0, got {self.batch_size}, {self.mini_batch_size}")
        if self.mini_batch_size > self.batch_size:
            raise ValueError(
                f"mini_batch_size ({self.mini_batch_size}) must not exceed batch_size ({self.batch_size})"
            )
        if self.clip_range <= 0.0:
            raise ValueError(f"clip_range must be > 0, got {self.clip_range}")

        self.policy_opt = build_optimizer(self.policy.parameters(), name=optimizer, lr=float(policy_lr))
        self.critic_opt = build_optimizer(self.critic.parameters(), name=optimizer, lr=float(critic_lr))

        self.cumulative_model_updates = 0

    # =============================================================================
    # Learning rates
    # =============================================================================
    def set_learning_rates(self, policy_lr: Optional[float] = None, critic_lr: Optional[float] = None) -> None:
        """Overwrite optimizer learning rates in place (e.g., from an iteration callback)."""
        if policy_lr is not None:
            set_learning_rate(self.policy_opt, policy_lr)
        if critic_lr is not None:
            set_learning_rate(self.critic_opt, critic_lr)

    # =============================================================================
    # Update
    # =============================================================================
    def _minibatch_loss(self, mb: ExperienceBatch, weight: float, sums: Dict[str, float]) -> th.Tensor:
        bp = self.policy.get_backprop_data(mb.states, mb.actions)
        old_logp = mb.log_probs.to(self.device)
        adv = mb.advantages.to(self.device)
        if self.normalize_advantages and adv.numel() > 1:
            adv = (adv - adv.mean()) / (adv.std() + 1e-8)

        log_ratio = bp.action_log_probs - old_logp
        ratio = th.exp(log_ratio)
        surr1 = ratio * adv
        surr2 = th.clamp(ratio, 1.0 - self.clip_range, 1.0 + self.clip_range) * adv
        policy_loss = -th.min(surr1, surr2).mean()

        v_pred = self.critic(mb.states).view(-1)
        value_loss = F.mse_loss(v_pred, mb.returns.to(self.device))

        total = (policy_loss - self.ent_coef * bp.entropy + self.vf_coef * value_loss) * weight
        if not bool(th.isfinite(total)):
            raise FloatingPointError(
                f"non-finite PPO loss (policy={float(policy_loss)}, value={float(value_loss)})"
            )

        with th.no_grad():
            sums["Policy Entropy"] += float(bp.entropy) * weight
            sums["Mean KL Divergence"] += float((ratio - 1.0 - log_ratio).mean()) * weight
            sums["Mean Ratio"] += float(ratio.mean()) * weight
            sums["Clip Fraction"] += float((surr2 < surr1).float().mean()) * weight
            sums["SB3 Clip Fraction"] += float(((ratio - 1.0).abs() > self.clip_range).float().mean()) * weight
            sums["Policy Loss"] += float(policy_loss) * weight
            sums["Value Function Loss"] += float(value_loss) * weight
        return total

    def learn(self, exp_buffer: ExperienceBuffer, report: Optional[Report] = None) -> Report:
        """
        Run the configured PPO epochs over ``exp_buffer``.

        Parameters
        ----------
        exp_buffer : ExperienceBuffer
            Processed experience (states, actions, log-probs, values, advantages).
        report : Report, optional
            Filled in place when given.

        Returns
        -------
        report : Report
            Averaged loss/diagnostic metrics of this call.

        Raises
        ------
        ValueError
            If ``exp_buffer`` holds no experience.
        FloatingPointError
            If a minibatch loss is not finite.
        """
        if exp_buffer.size == 0:
            raise ValueError("PPOCore.learn() needs a non-empty experience buffer")
        if report is None:
            report = Report()

        t_start = time.perf_counter()
        self.policy.train()
        self.critic.train()

        policy_before = parameters_to_vector(self.policy.parameters()).detach().clone()
        critic_before = parameters_to_vector(self.critic.parameters()).detach().clone()

        sums: Dict[str, float] = {
            "Policy Entropy": 0.0,
            "Mean KL Divergence": 0.0,
            "Mean Ratio": 0.0,
            "Clip Fraction": 0.0,
            "SB3 Clip Fraction": 0.0,
            "Policy Loss": 0.0,
            "Value Function Loss": 0.0,
        }
        n_updates = 0
        batch_time = 0.0
        all_params = list(self.policy.parameters()) + list(self.critic.parameters())

        for _ in range(self.epochs):
            for batch in exp_buffer.get_all_batches_shuffled(self.batch_size):
                t_batch = time.perf_counter()
                n = len(batch)

                self.policy_opt.zero_grad(set_to_none=True)
                self.critic_opt.zero_grad(set_to_none=True)

                for start in range(0, n, self.mini_batch_size):
                    mb = batch.slice(start, min(start + self.mini_batch_size, n))
                    loss = self._minibatch_loss(mb, len(mb) / n, sums)
                    loss.backward()

                clip_grad_norm(all_params, self.max_grad_norm)
                self.policy_opt.step()
                self.critic_opt.step()

                n_updates += 1
                batch_time += time.perf_counter() - t_batch

        self.policy.eval()
        self.critic.eval()
        self.cumulative_model_updates += n_updates

        with th.no_grad():
            policy_after = parameters_to_vector(self.policy.parameters())
            critic_after = parameters_to_vector(self.critic.parameters())
            policy_mag = float((policy_after - policy_before).norm())
            critic_mag = float((critic_after - critic_before).norm())

        denom = max(n_updates, 1)
        report["PPO Batch Consumption Time"] = batch_time / denom
        report["Cumulative Model Updates"] = float(self.cumulative_model_updates)
        for k, v in sums.items():
            report[k] = v / denom
        report["Policy Update Magnitude"] = policy_mag
        report["Value Function Update Magnitude"] = critic_mag
        report["PPO Learn Time"] = time.perf_counter() - t_start
        return report

    # =============================================================================
    # Persistence
    # =============================================================================
    def state_dict(self) -> Dict[str, Any]:
        """Optimizer states plus the cumulative update counter (weights live in the head)."""
        return {
            "cumulative_model_updates": int(self.cumulative_model_updates),
            "policy_opt": self.policy_opt.state_dict(),
            "critic_opt": self.critic_opt.state_dict(),
        }

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        self.cumulative_model_updates = int(state.get("cumulative_model_updates", 0))
        if "policy_opt" in state:
            self.policy_opt.load_state_dict(state["policy_opt"])
        if "critic_opt" in state:
            self.critic_opt.load_state_dict(state["critic_opt"])
