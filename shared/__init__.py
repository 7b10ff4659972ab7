"""
Shared data structures available to the core and analysis layers.
"""

from .cache import LRUCache, fingerprint
from .models import Event, Selection, SeriesSlice, Spectrum, TraceRef, TriggerConfig, slice_series

__all__ = [
    "LRUCache",
    "fingerprint",
    "Event",
    "Selection",
    "SeriesSlice",
    "Spectrum",
    "TraceRef",
    "TriggerConfig",
    "slice_series",
]
