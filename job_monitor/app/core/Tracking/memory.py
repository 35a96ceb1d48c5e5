"""Process memory probes used for peak-memory counters and sync ceilings."""

from __future__ import annotations

import threading

import psutil

_peak_lock = threading.Lock()
_peak_rss = 0


def current_rss_bytes() -> int:
    return int(psutil.Process().memory_info().rss)


def peak_rss_bytes() -> int:
    """High-water mark of this process's RSS as observed by successive calls."""
    global _peak_rss
    rss = current_rss_bytes()
    with _peak_lock:
        if rss > _peak_rss:
            _peak_rss = rss
        return _peak_rss
