# ensemble/Infra/openai_reply_generator.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openai import OpenAI, OpenAIError

from Domain.models import CharacterCard, Message

logger = logging.getLogger(__name__)


def strip_speaker_prefix(text: str, name: str) -> str:
    """Models like to answer 'Bob: ...' when asked to speak as Bob."""
    text = (text or "").strip()
    prefix = f"{name}:"
    while name and text[: len(prefix)].lower() == prefix.lower():
        text = text[len(prefix):].strip()
    return text


@dataclass
class OpenAIReplyGenerator:
    """
    Speaks as one character of the group through the OpenAI Responses API.

    The character's own lines go in as assistant turns, everyone else's as user turns
    prefixed with the speaker's name. The prompt handed in by the host (after the
    before-generation hooks ran) is the final user turn, so an operator instruction
    appended to it reaches the model.

    An empty reply is retried like an API error; when the retries run out on an empty
    reply, "" is returned and the host appends nothing.
    """

    model: str = "gpt-4o"
    history_window: int = 30
    max_output_tokens: int = 300
    temperature: float = 0.9
    reasoning_effort: Optional[str] = None  # set for reasoning models; temperature is then not sent
    retry_delays_s: Tuple[float, ...] = (0.5, 1.5, 4.0)
    system_template: str = (
        "You are {name}, one participant in a group chat. Stay in character. "
        "Reply with a single short chat message as {name}; do not write lines for anyone else, "
        "do not prefix your reply with your name.\n\nCHARACTER:\n{description}"
    )
    client: Any = None  # openai.OpenAI (or anything with .responses.create)

    def __post_init__(self) -> None:
        if self.client is None:
            self.client = OpenAI()

    def generate(self, card: CharacterCard, history: Sequence[Message], prompt: Any) -> str:
        raw = self._request(self.build_input(card, history, prompt))
        return strip_speaker_prefix(raw, card.name)

    def build_input(self, card: CharacterCard, history: Sequence[Message], prompt: Any) -> List[Dict[str, str]]:
        system = self.system_template.format(name=card.name, description=card.description or "(none)")
        input_messages: List[Dict[str, str]] = [{"role": "system", "content": system}]

        window = list(history)[-self.history_window:] if self.history_window > 0 else []
        for m in window:
            if m.speaker_id == card.id:
                input_messages.append({"role": "assistant", "content": m.text})
            else:
                who = m.speaker_name or m.speaker_id
                input_messages.append({"role": "user", "content": f"{who}: {m.text}"})

        input_messages.append({"role": "user", "content": str(prompt)})
        return input_messages

    def _request(self, input_messages: List[Dict[str, str]]) -> str:
        kwargs: Dict[str, Any] = dict(
            model=self.model,
            input=input_messages,
            max_output_tokens=int(self.max_output_tokens),
        )
        if self.reasoning_effort:
            kwargs["reasoning"] = {"effort": self.reasoning_effort}
        else:
            kwargs["temperature"] = float(self.temperature)

        delays = list(self.retry_delays_s)
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.client.responses.create(**kwargs)
            except OpenAIError as e:
                if not delays:
                    raise
                delay = delays.pop(0)
                logger.warning("[Ensemble] OpenAI call failed (attempt %d): %s; retry in %.1fs", attempt, e, delay)
                time.sleep(delay)
                continue

            text = (getattr(resp, "output_text", None) or "").strip()
            if text or not delays:
                return text
            delay = delays.pop(0)
            logger.warning("[Ensemble] Empty reply from %s (attempt %d); retry in %.1fs", self.model, attempt, delay)
            time.sleep(delay)
