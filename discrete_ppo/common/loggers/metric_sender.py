from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Union

from ..utils import Report
from .logger import Logger


class MetricSender:
    """
    Telemetry collaborator of the learner.

    Sends an aggregate :class:`Report` to a :class:`Logger` at a given step.
    Vector entries are expanded into ``key/0``, ``key/1``, ... because every
    writer backend accepts scalars only.

    Parameters
    ----------
    logger : Logger
        Destination logger.
    prefix : str, default=""
        Optional key prefix (e.g. ``"train"``).
    pbar : tqdm, optional
        Forwarded to :meth:`Logger.log` for the console line.
    """

    def __init__(self, logger: Logger, *, prefix: str = "", pbar: Optional[Any] = None) -> None:
        self.logger = logger
        self.prefix = str(prefix)
        self.pbar = pbar
        self.sent = 0

    def send(self, report: Union[Report, Mapping[str, Any]], step: int) -> Dict[str, float]:
        """Write ``report`` at ``step`` and return the row handed to the writers."""
        rep = report if isinstance(report, Report) else Report(dict(report))
        row = self.logger.log(rep.scalars(), step=int(step), pbar=self.pbar, prefix=self.prefix)
        self.sent += 1
        return row

    def close(self) -> None:
        self.logger.close()
