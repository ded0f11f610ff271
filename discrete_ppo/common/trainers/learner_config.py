from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple


# =============================================================================
# PPO hyperparameters
# =============================================================================
@dataclass
class PPOConfig:
    """
    Hyperparameters of the PPO update engine and its networks.

    Attributes
    ----------
    policy_layer_sizes, critic_layer_sizes:
        Hidden widths of the actor and critic MLPs.
    policy_temperature:
        Softmax temperature of the policy.
    action_prob_bonuses, action_entropy_scales:
        Optional per-action vectors (length = number of actions).
    batch_size:
        Rows per optimizer step.
    mini_batch_size:
        Rows per forward/backward chunk; must divide into ``batch_size``.
    epochs:
        Passes over the experience buffer per iteration.
    ent_coef, clip_range:
        Entropy bonus coefficient and ratio clip epsilon.
    policy_lr, critic_lr:
        Learning rates.
    optimizer:
        Optimizer name ("adam", "adamw", "sgd", "rmsprop").
    max_grad_norm:
        Global grad-norm clip (``<= 0`` disables).
    """

    policy_layer_sizes: Tuple[int, ...] = (256, 256, 256)
    critic_layer_sizes: Tuple[int, ...] = (256, 256, 256)
    policy_temperature: float = 1.0
    action_prob_bonuses: Optional[Tuple[float, ...]] = None
    action_entropy_scales: Optional[Tuple[float, ...]] = None

    batch_size: int = 50_000
    mini_batch_size: int = 50_000
    epochs: int = 2
    ent_coef: float = 0.005
    clip_range: float = 0.2
    policy_lr: float = 3e-4
    critic_lr: float = 3e-4
    optimizer: str = "adam"
    max_grad_norm: float = 0.5

    def __post_init__(self) -> None:
        self.policy_layer_sizes = tuple(int(x) for x in self.policy_layer_sizes)
        self.critic_layer_sizes = tuple(int(x) for x in self.critic_layer_sizes)
        if self.action_prob_bonuses is not None:
            self.action_prob_bonuses = tuple(float(x) for x in self.action_prob_bonuses)
        if self.action_entropy_scales is not None:
            self.action_entropy_scales = tuple(float(x) for x in self.action_entropy_scales)

        if self.policy_temperature <= 0:
            raise ValueError(f"policy_temperature must be > 0, got {self.policy_temperature}")
        if self.batch_size <= 0 or self.mini_batch_size <= 0:
            raise ValueError("batch_size and mini_batch_size must be positive")
        if self.mini_batch_size > self.batch_size:
            raise ValueError(
                f"mini_batch_size ({self.mini_batch_size}) must not exceed batch_size ({self.batch_size})"
            )
        if self.epochs <= 0:
            raise ValueError(f"epochs must be positive, got {self.epochs}")
        if self.clip_range <= 0:
            raise ValueError(f"clip_range must be > 0, got {self.clip_range}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# Learner configuration
# =============================================================================
@dataclass
class LearnerConfig:
    """
    Configuration of a :class:`Learner` run.

    Notes
    -----
    - ``timestep_limit <= 0`` means "no limit" (run until stopped).
    - ``timesteps_per_save <= 0`` disables periodic checkpoints.
    - ``reward_clip_range <= 0`` disables reward clipping.
    - ``max_consecutive_env_errors`` bounds how many env failures in a row a
      worker absorbs before the run is aborted.
    - ``backend`` selects thread workers ("thread") or Ray actors ("ray").
    - ``deterministic`` only configures seeding and cuDNN for reproducible runs.
      ``deterministic_actions`` makes every worker act greedily (argmax, stored
      log-prob 0); meant for evaluation runs, not for PPO training.
    - ``print_reports`` writes each iteration report under the progress bar.
    """

    num_workers: int = 8
    timesteps_per_iteration: int = 50_000
    timesteps_per_save: int = 5_000_000
    timestep_limit: int = 0
    exp_buffer_size: int = 100_000

    standardize_returns: bool = True
    max_returns_per_stats_increment: int = 150
    reward_clip_range: float = 10.0
    gae_gamma: float = 0.99
    gae_lambda: float = 0.95

    deterministic: bool = False
    deterministic_actions: bool = False
    random_seed: int = 123

    checkpoints_save_folder: str = "checkpoints"
    checkpoint_load_folder: Optional[str] = None
    checkpoints_to_keep: int = 5
    save_on_finish: bool = True

    send_metrics: bool = False
    log_dir: str = "runs"
    exp_name: str = "discrete_ppo"
    run_id: Optional[str] = None

    backend: str = "thread"
    max_consecutive_env_errors: int = 10
    device: str = "cpu"
    progress_bar: bool = True
    print_reports: bool = False

    ppo: PPOConfig = field(default_factory=PPOConfig)

    def __post_init__(self) -> None:
        if isinstance(self.ppo, dict):
            self.ppo = PPOConfig(**self.ppo)

        if self.num_workers <= 0:
            raise ValueError(f"num_workers must be positive, got {self.num_workers}")
        if self.timesteps_per_iteration <= 0:
            raise ValueError(f"timesteps_per_iteration must be positive, got {self.timesteps_per_iteration}")
        if self.exp_buffer_size <= 0:
            raise ValueError(f"exp_buffer_size must be positive, got {self.exp_buffer_size}")
        if not (0.0 <= self.gae_gamma <= 1.0 and 0.0 <= self.gae_lambda <= 1.0):
            raise ValueError(f"gae_gamma/gae_lambda must be in [0, 1], got {self.gae_gamma}, {self.gae_lambda}")
        if self.max_returns_per_stats_increment <= 0:
            raise ValueError("max_returns_per_stats_increment must be positive")
        if self.checkpoints_to_keep < 0:
            raise ValueError(f"checkpoints_to_keep must be >= 0, got {self.checkpoints_to_keep}")
        if self.max_consecutive_env_errors <= 0:
            raise ValueError("max_consecutive_env_errors must be positive")

        self.backend = str(self.backend).lower().strip()
        if self.backend not in ("thread", "ray"):
            raise ValueError(f"backend must be 'thread' or 'ray', got {self.backend!r}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
