# ensemble/Infra/json_cast_reader.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List

from Domain.models import CharacterCard

logger = logging.getLogger(__name__)


def load_cast(path: str) -> List[CharacterCard]:
    """
    Read character cards from a JSON file.

    Accepts either a list of cards or {"characters": [...]}.
    Entries missing "id" or "name" are skipped (best-effort).
    """
    p = Path(path)
    if not p.exists():
        return []

    data = json.loads(p.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("characters", [])

    cards: List[CharacterCard] = []
    for i, obj in enumerate(data if isinstance(data, list) else []):
        try:
            cards.append(CharacterCard.from_dict(obj))
        except (KeyError, TypeError, AttributeError):
            logger.debug("skipping malformed character entry #%d in %s", i, path)
    return cards
