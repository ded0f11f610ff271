from __future__ import annotations

import math
from typing import Any, Dict, Optional, Sequence

from .base_callback import BaseCallback


def _has_non_finite(value: Any) -> bool:
    """True if a scalar or a (nested) list/tuple of scalars holds NaN/Inf."""
    if isinstance(value, (list, tuple)):
        return any(_has_non_finite(v) for v in value)
    try:
        return not math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


class NaNGuardCallback(BaseCallback):
    """
    Stop training when an iteration report contains NaN/Inf.

    Parameters
    ----------
    keys : Sequence[str], optional
        Only these report keys are checked. All keys when None.
    log_prefix : str, default="sys/"
        Prefix of the diagnostic row logged when the guard triggers.

    Attributes
    ----------
    triggered_key : str or None
        Key that triggered the stop, if any.
    """

    def __init__(self, keys: Optional[Sequence[str]] = None, *, log_prefix: str = "sys/") -> None:
        self.keys = None if keys is None else [str(k) for k in keys]
        self.log_prefix = str(log_prefix)
        self.triggered_key: Optional[str] = None

    def on_update(self, learner: Any, report: Optional[Dict[str, Any]] = None) -> bool:
        if not report:
            return True

        items = report.items() if self.keys is None else [(k, report.get(k)) for k in self.keys]
        for k, v in items:
            if v is None or not _has_non_finite(v):
                continue
            self.triggered_key = str(k)
            self.log(
                learner,
                {"nan_guard/triggered": 1.0},
                step=int(getattr(learner, "total_timesteps", 0)),
                prefix=self.log_prefix,
            )
            return False
        return True
