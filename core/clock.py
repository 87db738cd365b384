"""
core/clock.py -- Time helpers shared by the stores and services.

Every ephemeral record carries an absolute millisecond-epoch expiry, so all
expiry math goes through now_ms(). Tests patch this single function to move
time forward instead of sleeping.
"""

import time
from datetime import datetime, timezone


def now_ms() -> int:
    return int(time.time() * 1000)


def expires_in_ms(minutes: int) -> int:
    """Return the absolute expiry (ms epoch) ``minutes`` from now."""
    return now_ms() + minutes * 60 * 1000


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
