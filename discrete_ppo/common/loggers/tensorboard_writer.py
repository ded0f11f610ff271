from __future__ import annotations

from typing import Mapping

from torch.utils.tensorboard import SummaryWriter

from .base_writer import Writer
from ..utils.logger_utils import _get_step, _split_meta


class TensorBoardWriter(Writer):
    """
    Emit every metric of a row as a TensorBoard scalar.

    Meta keys are stripped with :func:`_split_meta`; the row's ``step`` becomes the
    ``global_step`` so TensorBoard curves share the x-axis of the other sinks.
    Metric names with spaces (e.g. ``"Policy Entropy"``) are kept as tags.
    """

    def __init__(self, run_dir: str) -> None:
        self._tb = SummaryWriter(log_dir=run_dir)
        self._closed = False

    def write(self, row: Mapping[str, float]) -> None:
        step = _get_step(row)
        _, metrics = _split_meta(row)
        for k, v in metrics.items():
            self._tb.add_scalar(str(k), float(v), global_step=int(step))

    def flush(self) -> None:
        if not self._closed:
            self._tb.flush()

    def close(self) -> None:
        if not self._closed:
            self._tb.close()
        self._closed = True
