"""Detector thresholds and engine tuning.

All sensitivity knobs live here as named fields so analysts can tune them
from the command line instead of editing query text.
"""

from dataclasses import dataclass
from typing import Optional

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
DEFAULT_COHORT_MIN = 20
DEFAULT_ZSCORE = 3.0
DEFAULT_MILL_PERCENTILE = 0.99
DEFAULT_VOLUME = 1000
DEFAULT_SPIKE_RATIO = 5.0
DEFAULT_SPIKE_FLOOR = 50_000.0
DEFAULT_CONCENTRATION_SHARE = 0.95
DEFAULT_CONCENTRATION_MIN_TOTAL = 500_000.0

DEFAULT_MEMORY_LIMIT = "2GB"
DEFAULT_THREADS = 4
DEFAULT_BATCH_SIZE = 100_000
DEFAULT_WORKERS = 5


@dataclass(frozen=True)
class Thresholds:
    """Parameters for the five detectors."""

    cohort_min: int = DEFAULT_COHORT_MIN
    zscore: float = DEFAULT_ZSCORE
    mill_percentile: float = DEFAULT_MILL_PERCENTILE
    volume: int = DEFAULT_VOLUME
    spike_ratio: float = DEFAULT_SPIKE_RATIO
    spike_floor: float = DEFAULT_SPIKE_FLOOR
    concentration_share: float = DEFAULT_CONCENTRATION_SHARE
    concentration_min_total: float = DEFAULT_CONCENTRATION_MIN_TOTAL

    def validate(self) -> "Thresholds":
        if self.cohort_min < 2:
            raise ValueError(f"cohort_min must be at least 2, got {self.cohort_min}")
        if self.zscore < 0:
            raise ValueError(f"zscore must be non-negative, got {self.zscore}")
        if not 0 < self.mill_percentile <= 1:
            raise ValueError(f"mill_percentile must be in (0, 1], got {self.mill_percentile}")
        if self.volume < 0:
            raise ValueError(f"volume must be non-negative, got {self.volume}")
        if self.spike_ratio < 0 or self.spike_floor < 0:
            raise ValueError("spike_ratio and spike_floor must be non-negative")
        if not 0 < self.concentration_share <= 1:
            raise ValueError(
                f"concentration_share must be in (0, 1], got {self.concentration_share}"
            )
        if self.concentration_min_total < 0:
            raise ValueError("concentration_min_total must be non-negative")
        return self


@dataclass(frozen=True)
class EngineSettings:
    """DuckDB resource limits and scan/fan-out sizing."""

    memory_limit: str = DEFAULT_MEMORY_LIMIT
    threads: int = DEFAULT_THREADS
    temp_directory: Optional[str] = None
    batch_size: int = DEFAULT_BATCH_SIZE
    workers: int = DEFAULT_WORKERS
