from .report import Report
from .running_stat import RunningStat

__all__ = ["Report", "RunningStat"]
