from __future__ import annotations

from collections.abc import MutableMapping
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Union

import numpy as np
import torch as th

from .common_utils import _to_scalar


ReportValue = Union[float, List[float]]


def _coerce_value(value: Any) -> ReportValue:
    """Store scalars as float and anything array-like as a flat list of floats."""
    if th.is_tensor(value):
        value = value.detach().cpu().numpy()

    if isinstance(value, (list, tuple, np.ndarray)) and np.ndim(value) > 0:
        arr = np.asarray(value, dtype=np.float64).reshape(-1)
        return [float(v) for v in arr]

    s = _to_scalar(value)
    if s is None:
        raise TypeError(f"Report values must be scalar or array-like, got {type(value).__name__}")
    return float(s)


class Report(MutableMapping):
    """
    Ordered mapping of metric name -> scalar or vector value.

    A ``Report`` is produced per worker by the env runners, per iteration by the
    PPO update, and merged into one aggregate per learner iteration.

    Values are normalized on assignment: scalar-likes (python/numpy/torch) are
    stored as ``float`` and array-likes as ``List[float]``.

    Examples
    --------
    >>> r = Report()
    >>> r["Policy Loss"] = 0.25
    >>> r.accum("Episodes", 1)
    >>> r.accum("Episodes", 2)
    >>> r["Episodes"]
    3.0
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, ReportValue] = {}
        if data:
            for k, v in data.items():
                self[k] = v

    # ---------------------------------------------------------------------
    # MutableMapping
    # ---------------------------------------------------------------------
    def __getitem__(self, key: str) -> ReportValue:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[str(key)] = _coerce_value(value)

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Report({self._data!r})"

    # ---------------------------------------------------------------------
    # Accumulation / merging
    # ---------------------------------------------------------------------
    def accum(self, key: str, value: Any) -> None:
        """
        Add ``value`` to the current value of ``key`` (missing keys start at 0).

        Vectors are added elementwise and must have matching lengths.
        """
        v = _coerce_value(value)
        if key not in self._data:
            self._data[key] = v
            return

        cur = self._data[key]
        if isinstance(cur, list) or isinstance(v, list):
            a = np.asarray(cur, dtype=np.float64).reshape(-1)
            b = np.asarray(v, dtype=np.float64).reshape(-1)
            if a.shape != b.shape:
                raise ValueError(f"Report.accum shape mismatch for {key!r}: {a.shape} vs {b.shape}")
            self._data[key] = [float(x) for x in (a + b)]
        else:
            self._data[key] = float(cur) + float(v)

    def update_from(self, other: "Report") -> None:
        """Overwrite keys with the values of ``other``."""
        for k, v in other.items():
            self[k] = v

    @classmethod
    def average(cls, reports: Iterable["Report"]) -> "Report":
        """
        Merge several reports into one.

        Each key is averaged over the reports that contain it, so a key reported by
        only one worker keeps its value.

        Parameters
        ----------
        reports : Iterable[Report]
            Reports to merge. Order does not matter.

        Returns
        -------
        Report
            Merged report. Keys appear in first-seen order.
        """
        sums: Dict[str, np.ndarray] = {}
        counts: Dict[str, int] = {}
        is_vec: Dict[str, bool] = {}

        for rep in reports:
            for k, v in rep.items():
                arr = np.asarray(v, dtype=np.float64)
                if k in sums:
                    if sums[k].shape != arr.shape:
                        raise ValueError(f"Cannot average {k!r}: shapes {sums[k].shape} vs {arr.shape}")
                    sums[k] = sums[k] + arr
                    counts[k] += 1
                else:
                    sums[k] = arr.copy()
                    counts[k] = 1
                    is_vec[k] = isinstance(v, list)

        out = cls()
        for k, total in sums.items():
            mean = total / float(counts[k])
            out[k] = mean if is_vec[k] else float(mean)
        return out

    # ---------------------------------------------------------------------
    # Views
    # ---------------------------------------------------------------------
    def scalars(self) -> Dict[str, float]:
        """
        Flatten to ``Dict[str, float]``.

        Vector entries expand into ``key/0``, ``key/1``, ... so sinks that accept only
        scalars (TensorBoard, JSONL) still see them.
        """
        out: Dict[str, float] = {}
        for k, v in self._data.items():
            if isinstance(v, list):
                for i, x in enumerate(v):
                    out[f"{k}/{i}"] = float(x)
            else:
                out[k] = float(v)
        return out

    def to_dict(self) -> Dict[str, ReportValue]:
        return {k: (list(v) if isinstance(v, list) else v) for k, v in self._data.items()}

    def format(self, keys: Optional[Sequence[str]] = None, *, indent: str = "  ") -> str:
        """
        Render a human-readable multi-line block.

        Parameters
        ----------
        keys : Sequence[str], optional
            Keys to show, in order. Entries that start with ``"-"`` are rendered as
            blank separator lines. Missing keys are skipped. If None, all keys are
            shown in insertion order.
        indent : str, default="  "
            Prefix for each rendered line.
        """
        lines: List[str] = []
        for k in (keys if keys is not None else list(self._data)):
            if k.startswith("-"):
                lines.append("")
                continue
            if k not in self._data:
                continue
            v = self._data[k]
            if isinstance(v, list):
                body = "[" + ", ".join(f"{x:.4g}" for x in v) + "]"
            else:
                body = f"{v:.6g}"
            lines.append(f"{indent}{k}: {body}")
        return "\n".join(lines)
