"""Block time estimation, ETA formatting and progress milestones."""

import logging
from typing import Dict, Iterable, List, Optional

from .chain import ChainHeightSample

logger = logging.getLogger(__name__)


class BlockTimeEstimator:
    """Keeps the seconds-per-block estimate used for ETA calculation."""

    def __init__(self, default_seconds: float = 6.0):
        if default_seconds <= 0:
            raise ValueError("Default block time must be positive")
        self.seconds_per_block = float(default_seconds)

    def update(self, old: ChainHeightSample, new: ChainHeightSample) -> float:
        """Recompute from two samples; keep the previous value if the result is unusable."""
        height_delta = new.height - old.height
        if height_delta <= 0:
            return self.seconds_per_block

        elapsed = (new.observed_at - old.observed_at).total_seconds()
        estimate = elapsed / height_delta
        if estimate <= 0:
            logger.debug(f"Discarding non-positive block time estimate {estimate:.4f}s")
            return self.seconds_per_block

        self.seconds_per_block = estimate
        return estimate


def eta_seconds(remaining_blocks: int, seconds_per_block: float) -> int:
    return max(0, round(remaining_blocks * seconds_per_block))


def format_eta(total_seconds: int) -> str:
    """Render a duration, dropping leading zero units.

    >>> format_eta(3661)
    '01h 01m 01s'
    """
    total_seconds = max(0, int(total_seconds))
    days, rest = divmod(total_seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)

    if days > 0:
        return f"{days}d {hours:02d}h {minutes:02d}m"
    if hours > 0:
        return f"{hours:02d}h {minutes:02d}m {seconds:02d}s"
    return f"{minutes:02d}m {seconds:02d}s"


class MilestoneSet:
    """Percentage thresholds announced at most once per run."""

    def __init__(self, thresholds: Iterable[int]):
        self.thresholds: List[int] = sorted(set(int(t) for t in thresholds))
        self.fired: Dict[int, bool] = {t: False for t in self.thresholds}

    def evaluate(self, progress_percent: float) -> Optional[int]:
        """Mark and return the highest unfired threshold reached, if any."""
        eligible = [t for t in self.thresholds if progress_percent >= t and not self.fired[t]]
        if not eligible:
            return None
        milestone = eligible[-1]
        self.fired[milestone] = True
        return milestone

    def reset(self):
        for threshold in self.fired:
            self.fired[threshold] = False
