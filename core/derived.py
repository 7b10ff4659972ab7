"""Signals derived from a sample series."""
from __future__ import annotations

import numpy as np

from shared.models import as_float_array


def compute_derivative(t, y) -> np.ndarray:
    """
    Backward-difference derivative dy/dt.

    Intervals with a non-positive dt produce 0. The first sample copies the
    second so the output has the same length as the input.
    """
    times = as_float_array(t)
    values = as_float_array(y)
    length = min(times.size, values.size)
    dy = np.zeros(length, dtype=np.float64)
    if length < 2:
        return dy
    dt = np.diff(times[:length])
    diff = np.diff(values[:length])
    positive = dt > 0
    with np.errstate(divide="ignore", invalid="ignore"):
        dy[1:] = np.where(positive, diff / np.where(positive, dt, 1.0), 0.0)
    dy[0] = dy[1]
    return dy


__all__ = ["compute_derivative"]
