"""Host metrics read from the `/proc` filesystem (Linux only)."""

import logging
import os
from pathlib import Path
from typing import Optional

from streamrelay.misc.constants import MEGA


__all__ = [
    'MemoryInfo',
    'read_meminfo',
    'read_uptime',
    'read_load_average',
]

log = logging.getLogger(__name__)

PROC_MEMINFO = Path('/proc/meminfo')
PROC_UPTIME = Path('/proc/uptime')


class MemoryInfo:
    total_mb: float
    available_mb: float

    def __init__(self, total_mb: float, available_mb: float) -> None:
        self.total_mb = total_mb
        self.available_mb = available_mb

    @property
    def usage_percent(self) -> float:
        if self.total_mb <= 0:
            return 0.
        return round((self.total_mb - self.available_mb) / self.total_mb * 100, 2)


def read_meminfo(path: Path = PROC_MEMINFO) -> Optional[MemoryInfo]:
    """
    Parses total and available memory from a `meminfo` file.

    Falls back to `MemFree` on kernels that do not report `MemAvailable`.
    Returns `None` if the file is missing or lacks the total.
    """
    try:
        text = path.read_text()
    except OSError as e:
        log.debug(f"Cannot read {path}: {e}")
        return None
    values = {}
    for line in text.splitlines():
        key, _, rest = line.partition(':')
        parts = rest.split()
        if parts and parts[0].isdigit():
            values[key.strip()] = int(parts[0]) * 1024  # kB
    if 'MemTotal' not in values:
        return None
    available = values.get('MemAvailable', values.get('MemFree', 0))
    return MemoryInfo(values['MemTotal'] / MEGA, available / MEGA)


def read_uptime(path: Path = PROC_UPTIME) -> Optional[float]:
    try:
        return float(path.read_text().split()[0])
    except (OSError, ValueError, IndexError) as e:
        log.debug(f"Cannot read uptime from {path}: {e}")
        return None


def read_load_average() -> Optional[float]:
    try:
        return os.getloadavg()[0]
    except (AttributeError, OSError):
        return None
