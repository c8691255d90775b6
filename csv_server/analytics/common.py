"""
Value conversion helpers shared by the aggregation engine and the API layer.
"""
from __future__ import annotations

import datetime as dt
import math

import numpy as np
import pandas as pd


def to_python(value):
    """Convert a numpy/pandas scalar to a plain Python value (NA → None)."""
    if value is None:
        return None
    if pd.api.types.is_scalar(value) and pd.isna(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, np.generic):
        return value.item()
    return value


def sanitize_for_json(obj):
    """Recursively convert numpy/pandas/date types to JSON-safe Python."""
    if isinstance(obj, dict):
        return {str(k): sanitize_for_json(v) for k, v in obj.items() if k is not None}
    if isinstance(obj, (list, tuple)):
        return [sanitize_for_json(v) for v in obj]
    if isinstance(obj, np.ndarray):
        return sanitize_for_json(obj.tolist())
    if isinstance(obj, (dt.date, dt.datetime, pd.Timestamp)):
        return obj.isoformat()
    obj = to_python(obj)
    if isinstance(obj, float) and (math.isnan(obj) or math.isinf(obj)):
        return None
    return obj
