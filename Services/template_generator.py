# ensemble/Services/template_generator.py
from __future__ import annotations

import random
import re
from typing import List, Optional, Sequence

from Domain.models import CharacterCard, Message

_INSTRUCTION_RE = re.compile(r"\[Instruction:(?P<body>[^\]]*)\]\s*$")


class TemplateReplyGenerator:
    """
    Offline reply generator (no LLM).

    Picks a canned line, addresses the previous speaker, and echoes a trailing
    operator directive from the prompt so the effect of /direct is visible.
    """

    def __init__(self, *, seed: Optional[int] = None, lines: Optional[List[str]] = None):
        self._rng = random.Random(seed)
        self.lines = lines or [
            "I hear you.",
            "That's one way to look at it.",
            "Hm, I'm not so sure about that.",
            "Go on, I'm listening.",
            "Fair point.",
        ]

    def generate(self, card: CharacterCard, history: Sequence[Message], prompt: str) -> str:
        base = self._rng.choice(self.lines)

        prev = self._previous_speaker(history, card)
        if prev:
            base = f"{prev}, {base[0].lower()}{base[1:]}"

        directive = self._directive(prompt)
        if directive:
            base = f"{base} ({directive})"
        return base

    def _previous_speaker(self, history: Sequence[Message], card: CharacterCard) -> str:
        for m in reversed(history):
            if m.speaker_id != card.id:
                return m.speaker_name
        return ""

    def _directive(self, prompt: str) -> str:
        # Default brevity instructions start with "[Instruction:"; custom ones are free text.
        if not isinstance(prompt, str):
            return ""
        last_line = prompt.rstrip().rsplit("\n", 1)[-1].strip()
        m = _INSTRUCTION_RE.search(last_line)
        if m:
            return ""
        if last_line.endswith(":"):
            return ""
        return last_line
