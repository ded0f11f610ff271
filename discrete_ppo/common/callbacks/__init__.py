from .base_callback import BaseCallback, CallbackList
from .nan_guard_callback import NaNGuardCallback

__all__ = ["BaseCallback", "CallbackList", "NaNGuardCallback"]
