"""
discrete_ppo

PPO training core for environments with discrete action spaces.

Usage
-----
from discrete_ppo import Learner, LearnerConfig, PPOConfig

learner = Learner(make_env, LearnerConfig(num_workers=4, timestep_limit=1_000_000))
learner.learn()
"""

from __future__ import annotations

from .common.errors import (
    CheckpointFormatError,
    DevicePlacementError,
    EnvRunnerError,
    EnvStepError,
    LearnerError,
    PolicyArchitectureError,
    WorkerCrashedError,
    WorkerInitError,
)
from .common.callbacks import BaseCallback, CallbackList, NaNGuardCallback
from .common.loggers import MetricSender, build_logger
from .common.networks import ACTION_MIN_PROB, DiscretePolicy, ValueNetwork
from .common.trainers import AgentManager, Learner, LearnerConfig, LearnerStatus, PPOConfig
from .common.utils import Report, RunningStat
from .ppo import PPOCore, PPOHead, ppo

__all__ = [
    "ACTION_MIN_PROB",
    "AgentManager",
    "BaseCallback",
    "CallbackList",
    "CheckpointFormatError",
    "DevicePlacementError",
    "DiscretePolicy",
    "EnvRunnerError",
    "EnvStepError",
    "Learner",
    "LearnerConfig",
    "LearnerError",
    "LearnerStatus",
    "MetricSender",
    "NaNGuardCallback",
    "PPOConfig",
    "PPOCore",
    "PPOHead",
    "PolicyArchitectureError",
    "Report",
    "RunningStat",
    "ValueNetwork",
    "WorkerCrashedError",
    "WorkerInitError",
    "build_logger",
    "ppo",
]
