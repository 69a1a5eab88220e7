# ensemble/Services/roster.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from Domain.models import Candidate, CharacterCard

logger = logging.getLogger(__name__)


@dataclass
class GroupRoster:
    """
    Resolves a group's member references against the character registry.

    Members that do not map to a known card are skipped (not fatal).
    A roster without group_id means "not in a group chat": the scheduler stays idle.
    """

    characters: Sequence[CharacterCard] = ()
    members: List[str] = field(default_factory=list)
    group_id: Optional[str] = None

    def _index(self) -> Dict[str, CharacterCard]:
        return {c.id: c for c in self.characters}

    def is_active(self) -> bool:
        return self.group_id is not None

    def card(self, member_id: str) -> Optional[CharacterCard]:
        return self._index().get(member_id)

    def candidates(self) -> List[Candidate]:
        index = self._index()
        out: List[Candidate] = []
        for ref in self.members:
            card = index.get(ref)
            if card is None:
                logger.debug("[Ensemble] Skipping unknown group member %r", ref)
                continue
            out.append(card.to_candidate())
        return out

