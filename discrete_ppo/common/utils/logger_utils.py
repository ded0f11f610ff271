from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Mapping, Optional, TextIO, Tuple
import json
import os
import uuid


# =============================================================================
# Metadata convention
# =============================================================================
# Keys treated as "meta" fields (not plotted as metrics).
META_KEYS: Tuple[str, str, str] = ("step", "wall_time", "timestamp")


# =============================================================================
# Run directory utilities
# =============================================================================
def _generate_run_id() -> str:
    """
    Generate a unique run identifier suitable for filesystem paths.

    Returns
    -------
    run_id : str
        ``"{YYYY-mm-dd_HH-MM-SS}_{8-hex}"``, e.g. ``"2026-01-22_14-03-12_a1b2c3d4"``.
    """
    ts = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    return f"{ts}_{uuid.uuid4().hex[:8]}"


def _make_run_dir(
    log_dir: str,
    exp_name: str,
    *,
    run_id: Optional[str] = None,
    overwrite: bool = False,
    resume: bool = False,
) -> str:
    """
    Resolve ``{log_dir}/{exp_name}/{run_id}``.

    Parameters
    ----------
    log_dir : str
        Root logging directory.
    exp_name : str
        Experiment name (subdirectory under ``log_dir``).
    run_id : str, optional
        Run identifier; generated with :func:`_generate_run_id` when None.
    overwrite : bool, default=False
        Reuse the path even if it exists.
    resume : bool, default=False
        Return the path directly; raise if it does not exist.

    Raises
    ------
    FileNotFoundError
        If ``resume=True`` and the directory does not exist.

    Notes
    -----
    For a fresh run whose path already exists (and ``overwrite=False``), the first
    free ``{path}_{k}`` is returned.
    """
    base = os.path.join(str(log_dir), str(exp_name))
    rid = run_id or _generate_run_id()
    path = os.path.join(base, str(rid))

    if resume:
        if not os.path.exists(path):
            raise FileNotFoundError(f"resume=True but run_dir does not exist: {path}")
        return path

    if overwrite or (not os.path.exists(path)):
        return path

    i = 1
    while True:
        cand = f"{path}_{i}"
        if not os.path.exists(cand):
            return cand
        i += 1


# =============================================================================
# Metric row helpers
# =============================================================================
def _split_meta(row: Mapping[str, Any]) -> Tuple[Dict[str, float], Dict[str, float]]:
    """Split a row into (meta, metrics) using ``META_KEYS``."""
    meta = {k: float(row[k]) for k in META_KEYS if k in row}
    metrics = {str(k): float(v) for k, v in row.items() if k not in META_KEYS}
    return meta, metrics


def _get_step(row: Mapping[str, Any]) -> int:
    """Integer "step" of a row, or 0 when missing/unparseable."""
    try:
        return int(row.get("step", 0))
    except (TypeError, ValueError):
        return 0


# =============================================================================
# Serialization / file helpers for writers
# =============================================================================
def _json_dumps(obj: Any) -> str:
    """JSON with ``ensure_ascii=False`` and ``default=str`` (logging, not a schema)."""
    return json.dumps(obj, ensure_ascii=False, default=str)


def _open_append(path: str, *, encoding: str = "utf-8") -> TextIO:
    """Open ``path`` for appending text, creating the parent directory first."""
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    return open(path, "a", encoding=encoding)


def _safe_call(obj: Optional[Any], method: str) -> None:
    """Call ``obj.method()`` if present, ignoring I/O errors (flush/close on shutdown)."""
    if obj is None:
        return
    fn = getattr(obj, method, None)
    if not callable(fn):
        return
    try:
        fn()
    except (OSError, ValueError):
        return
