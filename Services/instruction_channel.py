# ensemble/Services/instruction_channel.py
from __future__ import annotations

import logging
import threading
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTION_TEMPLATE = "[Instruction: You are replying to {name}. Be brief.]"


class InstructionChannel:
    """
    Single-slot mailbox for the next generation request.

    - set_pending() overwrites whatever is there (last writer wins, no queue).
    - consume() reads and clears in one step, so a retried generation cannot
      replay a stale instruction.
    """

    def __init__(self, template: str = DEFAULT_INSTRUCTION_TEMPLATE):
        self.template = template
        self._slot: Optional[str] = None
        self._lock = threading.Lock()

    def set_pending(self, text: str) -> None:
        with self._lock:
            if self._slot is not None:
                logger.debug("[Ensemble] Overwriting unread instruction %r", self._slot)
            self._slot = text

    def set_default(self, last_speaker_name: str) -> str:
        text = self.template.format(name=last_speaker_name or "the previous speaker")
        self.set_pending(text)
        return text

    def consume(self) -> Optional[str]:
        with self._lock:
            text, self._slot = self._slot, None
        return text

    def clear(self) -> None:
        with self._lock:
            self._slot = None

    def inject(self, payload: Any) -> Any:
        """
        before-generation hook.

        Strings get the instruction appended on a new line; dict payloads get it
        appended to payload["prompt"] in place. Anything else is returned untouched
        and the instruction stays pending.
        """
        if self._slot is None:
            return payload

        if isinstance(payload, str):
            text = self.consume()
            return payload + "\n" + text if text else payload

        if isinstance(payload, dict) and isinstance(payload.get("prompt"), str):
            text = self.consume()
            if text:
                payload["prompt"] += "\n" + text
            return payload

        return payload
