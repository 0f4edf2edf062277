import math
import time
from datetime import datetime, timedelta


def utcnow() -> datetime:
    return datetime.utcnow()


def now_ts() -> float:
    """Wall-clock seconds, used by the volatile stores."""
    return time.time()


def window_start(seconds: int) -> datetime:
    """Start of the trailing window of ``seconds`` ending now."""
    return utcnow() - timedelta(seconds=seconds)


def ms_until(moment: datetime) -> int:
    remaining = (moment - utcnow()).total_seconds() * 1000
    return max(int(remaining), 0)


def minutes_ceil(ms: int) -> int:
    """Milliseconds rounded up to whole minutes, never below one."""
    return max(1, math.ceil(ms / 60000))
