# ensemble/Services/generation_host.py
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, Optional, Protocol, Sequence

from Domain.constants import USER_SENTINEL
from Domain.models import CharacterCard, Message
from Services.instruction_channel import InstructionChannel
from Services.roster import GroupRoster

logger = logging.getLogger(__name__)


# ----------------------------
# Protocols (ports)
# ----------------------------

class ITranscriptStore(Protocol):
    def messages(self) -> Sequence[Message]: ...
    def append(self, speaker_id: str, text: str, *, speaker_name: str = "") -> Message: ...


class IReplyGenerator(Protocol):
    def generate(self, card: CharacterCard, history: Sequence[Message], prompt: str) -> str: ...


# ----------------------------
# In-memory transcript
# ----------------------------

class InMemoryTranscript:
    """Append-only transcript kept in memory; positions are assigned on append."""

    def __init__(self, messages: Optional[Sequence[Message]] = None):
        self._messages: List[Message] = list(messages or [])

    def messages(self) -> Sequence[Message]:
        return tuple(self._messages)

    def append(self, speaker_id: str, text: str, *, speaker_name: str = "") -> Message:
        pos = self._messages[-1].position + 1 if self._messages else 0
        m = Message(speaker_id=speaker_id, text=text, position=pos, speaker_name=speaker_name)
        self._messages.append(m)
        return m

    def append_user(self, text: str, *, name: str = "User") -> Message:
        return self.append(USER_SENTINEL, text, speaker_name=name)


# ----------------------------
# Local host
# ----------------------------

@dataclass(frozen=True)
class TurnRequest:
    candidate_id: str
    instruction: Optional[str] = None


class LocalGenerationHost:
    """
    Minimal in-process host for the scheduler.

    dispatch_turn() only queues; drain() performs the generations in order:
      stage instruction -> build prompt -> before-generation hooks -> generator -> append
      -> generation-ended hooks.
    With a channel, each queued turn re-stages the instruction it was dispatched with, so
    two turns queued before drain() do not trade instructions.
    Generation-ended hooks may dispatch further turns; drain() keeps going until the
    queue is empty or max_generations is hit.
    """

    def __init__(
        self,
        *,
        roster: GroupRoster,
        transcript: ITranscriptStore,
        generator: IReplyGenerator,
        prompt_window: int = 20,
        on_message: Optional[Callable[[Message], None]] = None,
        channel: Optional[InstructionChannel] = None,
    ):
        self.roster = roster
        self.transcript = transcript
        self.generator = generator
        self.prompt_window = max(1, int(prompt_window))
        self.on_message = on_message
        self.channel = channel

        self._queue: Deque[TurnRequest] = deque()
        self._ended_hooks: List[Callable[[], Any]] = []
        self._before_hooks: List[Callable[[Any], Any]] = []
        self.prompts: List[str] = []  # prompts actually sent, newest last

    # ---------
    # IGenerationHost
    # ---------

    def dispatch_turn(self, candidate_id: str, instruction: Optional[str] = None) -> None:
        if self.roster.card(candidate_id) is None:
            raise KeyError(f"unknown candidate: {candidate_id!r}")
        self._queue.append(TurnRequest(candidate_id=candidate_id, instruction=instruction))

    def on_generation_ended(self, cb: Callable[[], Any]) -> None:
        self._ended_hooks.append(cb)

    def on_before_generation(self, cb: Callable[[Any], Any]) -> None:
        self._before_hooks.append(cb)

    # ---------
    # Driving
    # ---------

    @property
    def pending(self) -> int:
        return len(self._queue)

    def drain(self, max_generations: int = 50) -> List[Message]:
        produced: List[Message] = []
        while self._queue and len(produced) < max_generations:
            req = self._queue.popleft()
            m = self.generate_once(req)
            if m is None:
                continue
            produced.append(m)
            for hook in list(self._ended_hooks):
                hook()
        return produced

    def generate_once(self, req: TurnRequest) -> Optional[Message]:
        card = self.roster.card(req.candidate_id)
        if card is None:
            logger.info("[Ensemble] Dropping turn for unknown candidate %r", req.candidate_id)
            return None

        if self.channel is not None:
            # The slot holds whatever was dispatched last; this turn runs with its own.
            if req.instruction is None:
                self.channel.clear()
            else:
                self.channel.set_pending(req.instruction)

        history = self.transcript.messages()
        prompt: Any = self.build_prompt(card, history)
        for hook in self._before_hooks:
            out = hook(prompt)
            if out is not None:
                prompt = out
        self.prompts.append(prompt)

        text = (self.generator.generate(card, history, prompt) or "").strip()
        if not text:
            logger.info("[Ensemble] Empty generation for %s; nothing appended", card.name)
            return None

        m = self.transcript.append(card.id, text, speaker_name=card.name)
        if self.on_message is not None:
            self.on_message(m)
        return m

    def build_prompt(self, card: CharacterCard, history: Sequence[Message]) -> str:
        lines = [f"You are {card.name}. {card.description}".strip()]
        for m in history[-self.prompt_window:]:
            who = m.speaker_name or ("User" if m.is_user else m.speaker_id)
            lines.append(f"{who}: {m.text}")
        lines.append(f"{card.name}:")
        return "\n".join(lines)
