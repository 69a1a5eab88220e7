# ensemble/Infra/jsonl_transcript_store.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from Domain.constants import USER_SENTINEL
from Domain.models import Message

logger = logging.getLogger(__name__)


@dataclass
class JSONLTranscriptStore:
    """
    Append-only group transcript in JSON Lines (one message per line).

    Each line is:
      { "speaker_id": "...", "speaker_name": "...", "text": "...", "position": N }

    Messages are loaded once on construction and cached; append() writes through.
    Corrupt lines are skipped (best-effort).
    """

    path: str

    _cache: List[Message] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.touch(exist_ok=True)
        self._cache = self._read_all(p)

    # ----------------------------
    # Public APIs
    # ----------------------------

    def messages(self) -> Sequence[Message]:
        return tuple(self._cache)

    def append(self, speaker_id: str, text: str, *, speaker_name: str = "") -> Message:
        pos = self._cache[-1].position + 1 if self._cache else 0
        m = Message(speaker_id=speaker_id, text=text, position=pos, speaker_name=speaker_name)

        with Path(self.path).open("a", encoding="utf-8") as f:
            f.write(json.dumps(m.to_dict(), ensure_ascii=False) + "\n")

        self._cache.append(m)
        return m

    def append_user(self, text: str, *, name: str = "User") -> Message:
        return self.append(USER_SENTINEL, text, speaker_name=name)

    # ----------------------------
    # Internals
    # ----------------------------

    def _read_all(self, path: Path) -> List[Message]:
        out: List[Message] = []
        with path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                m = self._parse_message_line(line)
                if m is None:
                    if line.strip():
                        logger.debug("skipping corrupt transcript line %d in %s", lineno, path)
                    continue
                out.append(m)
        return out

    def _parse_message_line(self, line: str) -> Optional[Message]:
        line = line.strip()
        if not line:
            return None
        try:
            return Message.from_dict(json.loads(line))
        except (ValueError, KeyError, TypeError):
            return None
