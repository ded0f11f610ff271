from __future__ import annotations

from typing import Any, Dict, Mapping, Tuple

import os
import random
import sys

import numpy as np
import torch as th
from tqdm import tqdm

from .common_utils import _to_scalar


# =============================================================================
# Progress bar / console
# =============================================================================
def _make_pbar(**kwargs: Any) -> tqdm:
    """
    Create a ``tqdm`` progress bar.

    Parameters
    ----------
    **kwargs : Any
        Passed through to ``tqdm(...)`` (``total``, ``initial``, ``desc``,
        ``disable``, ...).
    """
    kwargs.setdefault("dynamic_ncols", True)
    kwargs.setdefault("leave", True)
    return tqdm(**kwargs)


def _warn(component: str, msg: str) -> None:
    """Print a non-fatal warning to stderr with a ``[component][WARN]`` prefix."""
    print(f"[{component}][WARN] {msg}", file=sys.stderr)


# =============================================================================
# Small utilities (keep minimal and predictable)
# =============================================================================
def _maybe_call(obj: Any, method: str, *args: Any, **kwargs: Any) -> Any:
    """
    Call a method on ``obj`` if it exists and is callable.

    Used for optional hooks such as ``env.close()`` or ``callback.on_update(...)``.

    Returns
    -------
    out : Any
        Return value of the called method, or None if ``obj`` is None or lacks a
        callable attribute ``method``.

    Notes
    -----
    Exceptions raised by the method itself are not caught.
    """
    fn = getattr(obj, method, None)
    if callable(fn):
        return fn(*args, **kwargs)
    return None


# =============================================================================
# RNG seeding
# =============================================================================
def _set_random_seed(
    seed: int,
    *,
    deterministic: bool = False,
    set_torch_threads_to_one: bool = False,
) -> None:
    """
    Seed Python/NumPy/PyTorch RNGs for reproducibility (best-effort).

    Parameters
    ----------
    seed : int
        Base seed.
    deterministic : bool, default=False
        If True, configures cuDNN for deterministic behavior.
    set_torch_threads_to_one : bool, default=False
        If True, limits PyTorch intra-op threads. Useful to avoid CPU
        oversubscription when many worker threads/actors run inference.
    """
    seed = int(seed)

    random.seed(seed)
    os.environ["PYTHONHASHSEED"] = str(seed)
    np.random.seed(seed)
    th.manual_seed(seed)

    if th.cuda.is_available():
        th.cuda.manual_seed_all(seed)

    if deterministic:
        th.backends.cudnn.benchmark = False
        th.backends.cudnn.deterministic = True

    if set_torch_threads_to_one:
        th.set_num_threads(1)


# =============================================================================
# Gym/Gymnasium compat helpers
# =============================================================================
def _to_info_dict(info: Any) -> Dict[str, Any]:
    """
    Coerce an environment ``info`` object to a plain dict.

    - Mapping -> copied to a plain dict
    - None    -> {}
    - other   -> {"_info": info}
    """
    if info is None:
        return {}
    if isinstance(info, Mapping):
        return dict(info)
    return {"_info": info}


def _env_reset(env: Any, **kwargs: Any) -> Tuple[np.ndarray, Dict[str, Any]]:
    """
    Reset an environment with Gym/Gymnasium compatibility.

    - Gymnasium: ``env.reset(...) -> (obs, info)``
    - Gym:       ``env.reset(...) -> obs``

    Returns
    -------
    obs : np.ndarray
        Flat float32 observation.
    info : Dict[str, Any]
        Info dict (empty for legacy Gym).
    """
    out = env.reset(**kwargs)

    if isinstance(out, tuple) and len(out) == 2:
        obs, info = out
        info_dict = _to_info_dict(info)
    else:
        obs, info_dict = out, {}

    return np.asarray(obs, dtype=np.float32).reshape(-1), info_dict


def _unpack_step(step_out: Any) -> Tuple[np.ndarray, float, bool, bool, Dict[str, Any]]:
    """
    Normalize ``env.step(...)`` outputs into a 5-tuple.

        (next_obs, reward, terminated, truncated, info_dict)

    Supported signatures
    --------------------
    - Gym:       (obs, reward, done, info)
    - Gymnasium: (obs, reward, terminated, truncated, info)

    Raises
    ------
    ValueError
        If ``step_out`` is not a tuple of length 4 or 5, or reward/flags are not
        scalar-like.

    Notes
    -----
    Legacy Gym ``done`` is reported as ``terminated`` unless the info dict carries
    ``TimeLimit.truncated=True``.
    """
    if not isinstance(step_out, tuple):
        raise ValueError(f"env.step(...) must return tuple, got: {type(step_out)}")

    n = len(step_out)
    if n == 4:
        next_obs, reward, done, info = step_out
        info_d = _to_info_dict(info)
        truncated = bool(info_d.get("TimeLimit.truncated", False)) and bool(done)
        terminated = bool(done) and not truncated
    elif n == 5:
        next_obs, reward, terminated, truncated, info = step_out
        info_d = _to_info_dict(info)
    else:
        raise ValueError(f"Unsupported step() return signature (len={n}).")

    r = _to_scalar(reward)
    t = _to_scalar(terminated)
    tr = _to_scalar(truncated)
    if r is None or t is None or tr is None:
        raise ValueError("reward/terminated/truncated must be scalar-like.")

    next_obs = np.asarray(next_obs, dtype=np.float32).reshape(-1)
    return next_obs, float(r), bool(t), bool(tr), info_d
