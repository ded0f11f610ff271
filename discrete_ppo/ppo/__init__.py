from .core import PPOCore
from .head import PPOHead
from .ppo import ppo

__all__ = ["PPOCore", "PPOHead", "ppo"]
