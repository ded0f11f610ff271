from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


# =============================================================================
# Callback base
# =============================================================================
class BaseCallback:
    """
    Hook points invoked by :class:`Learner` during :meth:`Learner.learn`.

    Every hook returns a control signal: ``True`` to continue, ``False`` to ask the
    learner to stop gracefully after the current iteration. Hooks are no-ops by
    default.

    The ``learner`` argument is duck-typed; callbacks should only rely on what
    they read (typically ``total_timesteps``, ``total_epochs``, ``config``,
    ``logger``, ``save``).

    Hooks run on the learner thread and block the training loop while they run.
    """

    def on_train_start(self, learner: Any) -> bool:
        return True

    def on_update(self, learner: Any, report: Optional[Dict[str, Any]] = None) -> bool:
        """
        Called once per iteration with the aggregate report.

        Runs after the PPO update and the learner's counter updates, so
        ``learner.total_timesteps`` already includes this iteration.
        """
        return True

    def on_checkpoint(self, learner: Any, path: str) -> bool:
        return True

    def on_train_end(self, learner: Any) -> bool:
        return True

    def log(self, learner: Any, metrics: Dict[str, Any], *, step: int, prefix: str = "") -> None:
        """Forward ``metrics`` to ``learner.logger.log`` when the learner has a logger."""
        logger = getattr(learner, "logger", None)
        if logger is None:
            return
        logger.log(metrics, step=step, prefix=prefix)


# =============================================================================
# Callback composition
# =============================================================================
class CallbackList(BaseCallback):
    """
    Dispatch hooks to several callbacks in order, short-circuiting on ``False``.

    Exceptions raised by a callback are not caught.
    """

    def __init__(self, callbacks: Sequence[Optional[BaseCallback]]) -> None:
        self.callbacks: List[BaseCallback] = [cb for cb in callbacks if cb is not None]
        for i, cb in enumerate(self.callbacks):
            if not isinstance(cb, BaseCallback):
                raise TypeError(f"callbacks[{i}] must be a BaseCallback, got: {type(cb).__name__}")

    def on_train_start(self, learner: Any) -> bool:
        for cb in self.callbacks:
            if not cb.on_train_start(learner):
                return False
        return True

    def on_update(self, learner: Any, report: Optional[Dict[str, Any]] = None) -> bool:
        for cb in self.callbacks:
            if not cb.on_update(learner, report):
                return False
        return True

    def on_checkpoint(self, learner: Any, path: str) -> bool:
        for cb in self.callbacks:
            if not cb.on_checkpoint(learner, path):
                return False
        return True

    def on_train_end(self, learner: Any) -> bool:
        for cb in self.callbacks:
            if not cb.on_train_end(learner):
                return False
        return True
