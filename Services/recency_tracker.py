# ensemble/Services/recency_tracker.py
from __future__ import annotations

from typing import Sequence, Union

from Domain.constants import NEVER
from Domain.models import Message


def turns_since(history: Sequence[Message], speaker_id: str) -> Union[int, float]:
    """
    Distance (in messages) from the end of `history` to the latest message by `speaker_id`.

    0 means the speaker wrote the last message; NEVER (inf) if they never spoke.
    Speakers are matched by id, so two participants sharing a display name stay apart.
    """
    n = len(history)
    for i in range(n - 1, -1, -1):
        if history[i].speaker_id == speaker_id:
            return n - 1 - i
    return NEVER
