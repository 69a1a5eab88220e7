# ensemble/Domain/constants.py
from __future__ import annotations

import math
from enum import Enum


# Speaker id used for every human-origin message in the transcript.
USER_SENTINEL = "user"

# "Never spoke" distance for the recency tracker.
NEVER = math.inf


class SchedulerPhase(str, Enum):
    """Where a single scheduling pass ended up (all phases are transient)."""
    IDLE = "IDLE"                            # nothing to decide / human just spoke
    AWAITING_DECISION = "AWAITING_DECISION"  # scoring in progress (normal path)
    OVERRIDDEN = "OVERRIDDEN"                # pending operator override being applied
    SELECTED = "SELECTED"                    # a candidate's turn was dispatched
    SUPPRESSED = "SUPPRESSED"                # budget exhausted or nobody above threshold
