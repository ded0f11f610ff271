from __future__ import annotations

from typing import Any, Dict, Mapping, Union

import numpy as np
import torch as th


# =============================================================================
# NumPy / Torch conversion utilities
# =============================================================================
def _to_tensor(
    x: Any,
    device: Union[str, th.device],
    dtype: th.dtype = th.float32,
) -> th.Tensor:
    """
    Convert input to a ``torch.Tensor`` on the given device and dtype.

    Parameters
    ----------
    x : Any
        NumPy array, tensor, scalar or list.
    device : Union[str, torch.device]
        Target device (e.g., "cpu", "cuda:0").
    dtype : torch.dtype, default=torch.float32
        Target dtype. Applied even if ``x`` is already a tensor.

    Returns
    -------
    t : torch.Tensor
        Tensor placed on ``device`` with dtype ``dtype``.
    """
    dev = th.device(device)

    if th.is_tensor(x):
        return x.to(device=dev, dtype=dtype)

    if isinstance(x, np.ndarray):
        return th.from_numpy(np.ascontiguousarray(x)).to(device=dev, dtype=dtype)

    return th.as_tensor(x, dtype=dtype, device=dev)


def _to_scalar(x: Any) -> Union[float, None]:
    """
    Convert a scalar-like input to a Python float.

    Returns
    -------
    s : float or None
        Python float if convertible, else None.

    Notes
    -----
    Tensors/arrays with more than one element return None to avoid silently
    discarding data.
    """
    if th.is_tensor(x):
        if x.numel() == 1:
            return float(x.detach().cpu().item())
        return None

    if isinstance(x, (bool, int, float, np.number)):
        return float(x)

    try:
        arr = np.asarray(x)
        if arr.shape == () or arr.size == 1:
            return float(arr.reshape(-1)[0])
    except (TypeError, ValueError):
        return None

    return None


def _to_cpu_state_dict(state_dict: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Copy a state dict with every tensor detached, cloned and moved to CPU.

    Used before handing parameters to another thread/process or to ``torch.save``,
    so the receiver never aliases live training tensors.
    """
    out: Dict[str, Any] = {}
    for k, v in state_dict.items():
        if th.is_tensor(v):
            out[k] = v.detach().cpu().clone()
        elif isinstance(v, Mapping):
            out[k] = _to_cpu_state_dict(v)
        else:
            out[k] = v
    return out
