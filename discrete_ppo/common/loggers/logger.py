from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import json
import os
import socket
import sys
import time

import numpy as np
import torch as th

from ..utils.common_utils import _to_scalar
from ..utils.logger_utils import META_KEYS, _make_run_dir


class Logger:
    """
    Scalar metric logger (frontend) dispatching rows to writer backends.

    The logger owns the run directory, infers the step, prefixes and normalizes
    keys, optionally drops non-finite values, prints a console line and flushes
    writers periodically. File/network I/O is left to the writers.

    Parameters
    ----------
    log_dir : str, default="./runs"
        Root directory of all runs.
    exp_name : str, default="exp"
        Experiment subdirectory.
    run_id : str, optional
        Run directory name; generated when None.
    overwrite, resume : bool, default=False
        Forwarded to :func:`_make_run_dir`.
    writers : Iterable[Writer], optional
        Backends attached at construction.
    console_every : int, default=1
        Print a console line every N :meth:`log` calls (``<= 0`` disables).
    flush_every : int, default=10
        Flush writers every N :meth:`log` calls (``<= 0`` disables).
    drop_non_finite : bool, default=False
        Skip NaN/Inf values instead of writing them.
    strict : bool, default=False
        Re-raise writer errors instead of recording them in :attr:`errors`.

    Notes
    -----
    Step inference order: explicit ``step`` argument, then the callable set by
    :meth:`set_step_fn`, then the bound learner's ``total_timesteps``, else 0.
    """

    def __init__(
        self,
        *,
        log_dir: str = "./runs",
        exp_name: str = "exp",
        run_id: Optional[str] = None,
        overwrite: bool = False,
        resume: bool = False,
        writers: Optional[Iterable[Any]] = None,
        console_every: int = 1,
        flush_every: int = 10,
        drop_non_finite: bool = False,
        strict: bool = False,
    ) -> None:
        self.strict = bool(strict)
        self.errors: List[str] = []

        self.run_dir = _make_run_dir(
            log_dir=log_dir,
            exp_name=exp_name,
            run_id=run_id,
            overwrite=bool(overwrite),
            resume=bool(resume),
        )
        os.makedirs(self.run_dir, exist_ok=True)

        self.console_every = int(console_every)
        self.flush_every = int(flush_every)
        self.drop_non_finite = bool(drop_non_finite)

        self._start_time = time.time()
        self._log_calls = 0
        self._step_fn: Optional[Callable[[], int]] = None
        self._writers: List[Any] = list(writers) if writers is not None else []

        try:
            self.dump_metadata()
        except OSError as e:
            self._handle_exception(e, "dump_metadata")

    def __enter__(self) -> "Logger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---------------------------------------------------------------------
    # Step inference
    # ---------------------------------------------------------------------
    def set_step_fn(self, fn: Optional[Callable[[], int]]) -> None:
        self._step_fn = fn

    def bind_learner(self, learner: Any) -> None:
        """Infer the step from ``learner.total_timesteps`` when none is given."""
        self.set_step_fn(lambda: int(getattr(learner, "total_timesteps", 0)))

    def _infer_step(self, step: Optional[int]) -> int:
        if step is not None:
            return int(step)
        if self._step_fn is not None:
            return int(self._step_fn())
        return 0

    # ---------------------------------------------------------------------
    # Errors
    # ---------------------------------------------------------------------
    def _handle_exception(self, err: Exception, context: str) -> None:
        self.errors.append(f"[{self.__class__.__name__}] {context}: {type(err).__name__}: {err}")
        if self.strict:
            raise err

    # ---------------------------------------------------------------------
    # Keys
    # ---------------------------------------------------------------------
    @staticmethod
    def _norm_prefix(prefix: str) -> str:
        p = str(prefix).strip().replace("\\", "/").strip("/")
        return p + "/" if p else ""

    @staticmethod
    def _norm_key(key: Any) -> str:
        return str(key).strip().replace("\\", "/").lstrip("/")

    def _join_name(self, prefix: str, key: Any) -> str:
        return f"{self._norm_prefix(prefix)}{self._norm_key(key)}"

    # ---------------------------------------------------------------------
    # Logging
    # ---------------------------------------------------------------------
    def log(
        self,
        metrics: Mapping[str, Any],
        step: Optional[int] = None,
        *,
        pbar: Optional[Any] = None,
        prefix: str = "",
    ) -> Dict[str, float]:
        """
        Write one row of scalar metrics to every writer.

        Parameters
        ----------
        metrics : Mapping[str, Any]
            Values convertible by :func:`_to_scalar`; others are skipped.
        step : int, optional
            Explicit step; inferred when omitted.
        pbar : tqdm, optional
            If given, the console line goes to ``pbar.set_description_str``.
        prefix : str, default=""
            Prepended to every key as ``prefix/key``.

        Returns
        -------
        row : Dict[str, float]
            The row handed to the writers (including meta keys).
        """
        s = self._infer_step(step)
        self._log_calls += 1

        row: Dict[str, float] = {}
        for k, v in metrics.items():
            val = _to_scalar(v)
            if val is None:
                continue
            fval = float(val)
            if self.drop_non_finite and not np.isfinite(fval):
                continue
            row[self._join_name(prefix, k)] = fval

        now = time.time()
        row["step"] = float(s)
        row["wall_time"] = float(now - self._start_time)
        row["timestamp"] = float(now)

        for w in self._writers:
            try:
                w.write(row)
            except Exception as e:
                self._handle_exception(e, f"writer.write({w.__class__.__name__})")

        if self.console_every > 0 and self._log_calls % self.console_every == 0:
            self._print_console(row, pbar=pbar)

        if self.flush_every > 0 and self._log_calls % self.flush_every == 0:
            self.flush()
        return row

    # ---------------------------------------------------------------------
    # Config / metadata
    # ---------------------------------------------------------------------
    def dump_config(self, config: Mapping[str, Any], filename: str = "config.json") -> None:
        path = os.path.join(self.run_dir, filename)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(dict(config), f, indent=2, ensure_ascii=False, default=str)

    def dump_metadata(self, filename: str = "metadata.json") -> None:
        """Host, interpreter and torch/CUDA info of this run, as JSON in ``run_dir``."""
        meta: Dict[str, Any] = {
            "run_dir": self.run_dir,
            "start_time_unix": float(self._start_time),
            "start_time_iso": datetime.fromtimestamp(self._start_time).isoformat(),
            "host": socket.gethostname(),
            "pid": os.getpid(),
            "python": sys.version.replace("\n", " "),
            "platform": sys.platform,
            "torch": str(th.__version__),
            "cuda_available": bool(th.cuda.is_available()),
        }
        path = os.path.join(self.run_dir, filename)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2, ensure_ascii=False, default=str)

    # ---------------------------------------------------------------------
    # Writers
    # ---------------------------------------------------------------------
    def add_writer(self, writer: Any) -> None:
        self._writers.append(writer)

    def add_writers(self, writers: Iterable[Any]) -> None:
        for w in writers:
            self.add_writer(w)

    @property
    def writers(self) -> List[Any]:
        return list(self._writers)

    def flush(self) -> None:
        for w in self._writers:
            try:
                w.flush()
            except Exception as e:
                self._handle_exception(e, f"writer.flush({w.__class__.__name__})")

    def close(self) -> None:
        try:
            self.flush()
        finally:
            for w in self._writers:
                try:
                    w.close()
                except Exception as e:
                    self._handle_exception(e, f"writer.close({w.__class__.__name__})")

    # ---------------------------------------------------------------------
    # Console
    # ---------------------------------------------------------------------
    @staticmethod
    def _print_console(row: Mapping[str, float], *, pbar: Optional[Any] = None, max_items: int = 6) -> None:
        step = int(row.get("step", 0.0))
        wall = float(row.get("wall_time", 0.0))
        shown: List[str] = []
        for k, v in row.items():
            if k in META_KEYS:
                continue
            shown.append(f"{k}={float(v):.4g}")
            if len(shown) >= max_items:
                break

        msg = f"[step={step} | t={wall:.1f}s] " + " ".join(shown)
        if pbar is not None:
            pbar.set_description_str(msg, refresh=True)
            return
        print(msg)
