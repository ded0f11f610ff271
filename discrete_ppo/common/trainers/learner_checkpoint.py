from __future__ import annotations

from typing import Any, Dict, List, Optional

import copy
import json
import os
import re
import time

import torch as th

from ..errors import CheckpointFormatError
from ..utils import RunningStat
from ..utils.train_utils import _warn

CHECKPOINT_PREFIX = "learner"
CHECKPOINT_FORMAT_VERSION = 1
_CKPT_RE = re.compile(rf"^{CHECKPOINT_PREFIX}_(\d+)\.pt$")


# =============================================================================
# Paths
# =============================================================================
def checkpoint_filename(total_timesteps: int) -> str:
    return f"{CHECKPOINT_PREFIX}_{int(total_timesteps):012d}.pt"


def list_checkpoints(folder: str) -> List[str]:
    """Checkpoint files in ``folder`` sorted by timestep (oldest first)."""
    if not os.path.isdir(folder):
        return []
    found = []
    for name in os.listdir(folder):
        m = _CKPT_RE.match(name)
        if m is not None:
            found.append((int(m.group(1)), os.path.join(folder, name)))
    found.sort()
    return [p for _, p in found]


def resolve_load_path(path: str) -> str:
    """
    Resolve a checkpoint file from a file path or a folder.

    Raises
    ------
    CheckpointFormatError
        If ``path`` does not exist or a folder holds no checkpoint.
    """
    if os.path.isdir(path):
        ckpts = list_checkpoints(path)
        if not ckpts:
            raise CheckpointFormatError(f"No '{CHECKPOINT_PREFIX}_*.pt' checkpoint found in {path}")
        return ckpts[-1]
    if not os.path.isfile(path):
        raise CheckpointFormatError(f"Checkpoint not found: {path}")
    return path


def _atomic_torch_save(obj: Any, path: str) -> None:
    tmp = path + ".tmp"
    th.save(obj, tmp)
    os.replace(tmp, path)


def _prune_checkpoints(folder: str, keep: int) -> None:
    """Delete the oldest checkpoints beyond ``keep`` (``keep <= 0`` keeps everything)."""
    if keep <= 0:
        return
    for old in list_checkpoints(folder)[:-keep]:
        try:
            os.remove(old)
        except OSError as e:
            _warn("Learner", f"could not prune checkpoint {old}: {e}")


# =============================================================================
# Full checkpoint
# =============================================================================
def save_checkpoint(learner: Any, path: Optional[str] = None) -> str:
    """
    Write a learner checkpoint as one file.

    Parameters
    ----------
    learner : Any
        Learner-like object (duck-typed) providing ``run_id``, ``total_timesteps``,
        ``total_epochs``, ``total_iterations``, ``ppo`` (with ``head``),
        ``return_stats`` and ``config``.
    path : str, optional
        Folder or ``.pt`` file. Defaults to ``config.checkpoints_save_folder``.
        A folder receives ``learner_{total_timesteps:012d}.pt`` and is pruned to
        ``config.checkpoints_to_keep`` files.

    Returns
    -------
    saved_path : str
        Absolute path of the written file.

    Notes
    -----
    The file is written to a temporary name first and moved into place with
    ``os.replace``, so readers never observe a partial checkpoint.
    """
    target = path if path is not None else str(learner.config.checkpoints_save_folder)
    is_file = target.endswith(".pt")
    folder = os.path.dirname(os.path.abspath(target)) if is_file else os.path.abspath(target)
    os.makedirs(folder, exist_ok=True)

    out = os.path.abspath(target) if is_file else os.path.join(folder, checkpoint_filename(learner.total_timesteps))

    ckpt: Dict[str, Any] = {
        "format_version": CHECKPOINT_FORMAT_VERSION,
        "learner": {
            "run_id": str(learner.run_id),
            "total_timesteps": int(learner.total_timesteps),
            "total_epochs": int(learner.total_epochs),
            "total_iterations": int(learner.total_iterations),
            "timestamp": float(time.time()),
        },
        "ppo_head": learner.ppo.head.state_dict(),
        "ppo_core": learner.ppo.state_dict(),
        "return_stats": learner.return_stats.state_dict(),
        "config": learner.config.to_dict(),
    }
    _atomic_torch_save(ckpt, out)

    if not is_file:
        _prune_checkpoints(folder, int(learner.config.checkpoints_to_keep))
    return out


def load_checkpoint(learner: Any, path: str) -> str:
    """
    Restore a learner from a checkpoint file or folder (latest file).

    Returns
    -------
    loaded_path : str
        The file that was read.

    Raises
    ------
    CheckpointFormatError
        If the file cannot be read, has another ``format_version``, is missing
        required fields, or its weights do not fit the learner's networks.

    Notes
    -----
    Every section is validated before the learner changes. If loading the
    weights or optimizer state fails midway, the previous state is restored, so
    a failed load leaves the learner as it was.
    """
    ckpt_path = resolve_load_path(path)
    try:
        sd = th.load(ckpt_path, map_location="cpu")
    except Exception as e:
        raise CheckpointFormatError(f"Could not read checkpoint {ckpt_path}: {type(e).__name__}: {e}") from e

    if not isinstance(sd, dict):
        raise CheckpointFormatError(f"Invalid checkpoint format (expected dict), got {type(sd).__name__}")
    version = sd.get("format_version")
    if version != CHECKPOINT_FORMAT_VERSION:
        raise CheckpointFormatError(
            f"Unsupported checkpoint format_version {version!r} in {ckpt_path} "
            f"(expected {CHECKPOINT_FORMAT_VERSION})"
        )
    missing = [k for k in ("learner", "ppo_head", "ppo_core", "return_stats") if k not in sd]
    if missing:
        raise CheckpointFormatError(f"Checkpoint {ckpt_path} is missing keys: {missing}")

    state = sd["learner"]
    try:
        run_id = str(state["run_id"])
        total_timesteps = int(state["total_timesteps"])
        total_epochs = int(state["total_epochs"])
        total_iterations = int(state["total_iterations"])
    except (KeyError, TypeError, ValueError) as e:
        raise CheckpointFormatError(f"Malformed learner state in {ckpt_path}: {e}") from e

    staged_stats = RunningStat(shape=learner.return_stats.shape)
    try:
        staged_stats.load_state_dict(sd["return_stats"])
    except (KeyError, TypeError, ValueError) as e:
        raise CheckpointFormatError(f"Malformed return stats in {ckpt_path}: {e}") from e

    head_backup = learner.ppo.head.state_dict()
    core_backup = copy.deepcopy(learner.ppo.state_dict())
    try:
        learner.ppo.head.load_state_dict(sd["ppo_head"])
        learner.ppo.load_state_dict(sd["ppo_core"])
    except (CheckpointFormatError, KeyError, TypeError, ValueError) as e:
        learner.ppo.head.load_state_dict(head_backup)
        learner.ppo.load_state_dict(core_backup)
        if isinstance(e, CheckpointFormatError):
            raise
        raise CheckpointFormatError(f"Malformed optimizer state in {ckpt_path}: {e}") from e

    learner.return_stats.load_state_dict(staged_stats.state_dict())
    learner.run_id = run_id
    learner.total_timesteps = total_timesteps
    learner.total_epochs = total_epochs
    learner.total_iterations = total_iterations
    return ckpt_path


# =============================================================================
# Return statistics only
# =============================================================================
def save_stats(stats: RunningStat, path: str) -> str:
    """Write the RunningStat accumulator as JSON (atomic replace)."""
    out = os.path.abspath(path)
    os.makedirs(os.path.dirname(out), exist_ok=True)
    tmp = out + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(stats.state_dict(), f, indent=2)
    os.replace(tmp, out)
    return out


def load_stats(stats: RunningStat, path: str) -> None:
    """
    Read a RunningStat accumulator written by :func:`save_stats`.

    Raises
    ------
    CheckpointFormatError
        If the file is missing, not JSON, or does not describe a compatible stat.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        stats.load_state_dict(payload)
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise CheckpointFormatError(f"Could not load return stats from {path}: {type(e).__name__}: {e}") from e
