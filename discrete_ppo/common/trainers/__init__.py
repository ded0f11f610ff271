from .agent_manager import AgentManager, CollectionResult
from .env_runner import EnvRunner
from .learner import Learner, LearnerStatus
from .learner_checkpoint import list_checkpoints, load_checkpoint, save_checkpoint
from .learner_config import LearnerConfig, PPOConfig

__all__ = [
    "AgentManager",
    "CollectionResult",
    "EnvRunner",
    "Learner",
    "LearnerConfig",
    "LearnerStatus",
    "PPOConfig",
    "list_checkpoints",
    "load_checkpoint",
    "save_checkpoint",
]
