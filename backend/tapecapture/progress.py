# backend/tapecapture/progress.py
import re
from typing import Optional

_PERCENT_RE = re.compile(r"(\d+)\s*%")
_RATIO_RE = re.compile(r"(\d+)/(\d+)")


def parse_progress(line: str) -> Optional[int]:
    """
    Best-effort progress from one line of capture output.

    "NN%" wins; otherwise "count/total" is turned into a percentage.
    Returns None when the line carries neither. Values are clamped to 0-100
    but not forced to increase.
    """
    m = _PERCENT_RE.search(line)
    if m:
        return min(int(m.group(1)), 100)

    m = _RATIO_RE.search(line)
    if m:
        count, total = int(m.group(1)), int(m.group(2))
        if total <= 0:
            return None
        return min(count * 100 // total, 100)

    return None
