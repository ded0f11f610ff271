from .optimizer_builder import build_optimizer, clip_grad_norm, set_learning_rate

__all__ = ["build_optimizer", "clip_grad_norm", "set_learning_rate"]
