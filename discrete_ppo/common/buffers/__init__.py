from .experience_buffer import ExperienceBatch, ExperienceBuffer
from .trajectory import Trajectory, TrajectoryBuilder

__all__ = ["ExperienceBatch", "ExperienceBuffer", "Trajectory", "TrajectoryBuilder"]
