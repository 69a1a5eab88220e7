# app/repl.py
from __future__ import annotations

import json
import logging
import os
from typing import Callable, List, Optional

from pydantic import ValidationError

from Domain.models import CharacterCard, Message
from Domain.schemas import coerce_setting
from Infra.json_cast_reader import load_cast
from Infra.jsonl_transcript_store import JSONLTranscriptStore
from Infra.sqlite_settings_store import SQLiteSettingsStore
from Services.candidate_scorer import CandidateScorer
from Services.generation_host import IReplyGenerator, ITranscriptStore, LocalGenerationHost
from Services.instruction_channel import InstructionChannel
from Services.roster import GroupRoster
from Services.template_generator import TemplateReplyGenerator
from Services.turn_scheduler import SchedulerConfig, TurnScheduler

logger = logging.getLogger(__name__)


DEMO_CAST: List[CharacterCard] = [
    CharacterCard(
        id="alice",
        name="Alice",
        description="A philosophy student who likes arguing about ethics and money.",
        first_message="Hi! Did anyone read the news today?",
    ),
    CharacterCard(
        id="bob",
        name="Bob",
        description="A gruff blacksmith who forges swords and knives for the village.",
        first_message="Careful, the anvil is still hot.",
    ),
    CharacterCard(
        id="carol",
        name="Carol",
        description="A travelling merchant, always counting coins and haggling.",
        first_message="Everything has a price, friend.",
    ),
]


HELP_LINES = [
    "Commands:",
    "  /quit",
    "  /help",
    "  /direct <instruction>   force the best candidate to speak now, with an instruction",
    "  /queue <instruction>    apply the instruction on the next automatic turn",
    "  /set <key> <value>      enabled|threshold|talkativeness|max_turns",
    "  /settings               show current settings",
    "  /roster                 show group members",
    "  /debug on|off           scheduler logging at DEBUG/INFO",
]


class ReplSession:
    """
    Wires transcript + roster + settings + host + scheduler for an interactive group chat.

    handle_line() is the whole REPL step: plain lines are user messages, '/...' lines are
    commands. Output goes through `out` so the class is usable without a terminal.
    """

    def __init__(
        self,
        *,
        roster: GroupRoster,
        transcript: ITranscriptStore,
        settings,
        generator: IReplyGenerator,
        out: Callable[[str], None] = print,
        settle_delay_s: float = 1.0,
        scorer: Optional[CandidateScorer] = None,
    ):
        self.roster = roster
        self.transcript = transcript
        self.settings = settings
        self.out = out

        channel = InstructionChannel()
        self.host = LocalGenerationHost(
            roster=roster,
            transcript=transcript,
            generator=generator,
            on_message=self._print_message,
            channel=channel,
        )
        self.scheduler = TurnScheduler(
            transcript=transcript,
            roster=roster,
            host=self.host,
            settings=settings,
            channel=channel,
            scorer=scorer,
            cfg=SchedulerConfig(settle_delay_s=settle_delay_s),
        ).attach()

    # ---------
    # Output
    # ---------

    def _print_message(self, m: Message) -> None:
        self.out(f"{m.speaker_name or m.speaker_id}: {m.text}")

    # ---------
    # Input
    # ---------

    def handle_line(self, line: str) -> bool:
        """Returns False when the session should end."""
        s = line.strip()
        if not s:
            return True
        if s.startswith("/"):
            return self.handle_command(s)

        self.transcript.append_user(s)
        self._first_reply()
        self.host.drain()
        return True

    def _first_reply(self) -> None:
        # The host answers the user itself; automatic continuation starts afterwards.
        cands = self.roster.candidates()
        if not self.roster.is_active() or not cands:
            return
        talkativeness = self.settings.load().talkativeness
        scored = self.scheduler.scorer.score(self.transcript.messages(), cands, talkativeness)
        best = CandidateScorer.pick_best(scored, threshold=0, respect_threshold=False)
        if best is not None:
            self.host.dispatch_turn(best.candidate.id, None)

    def handle_command(self, s: str) -> bool:
        cmd, _, rest = s.partition(" ")
        cmd = cmd.lower()
        rest = rest.strip()

        if cmd == "/quit":
            return False

        if cmd == "/help":
            for ln in HELP_LINES:
                self.out(ln)
            return True

        if cmd == "/direct":
            if not rest:
                self.out("[repl] usage: /direct <instruction>")
                return True
            decision = self.scheduler.direct(rest.strip('"'))
            if not decision.dispatched:
                self.out(f"[repl] nobody to direct ({decision.reason})")
            self.host.drain()
            return True

        if cmd == "/queue":
            if not rest:
                self.out("[repl] usage: /queue <instruction>")
                return True
            self.scheduler.queue_override(rest.strip('"'))
            self.out("[repl] override queued for the next automatic turn")
            return True

        if cmd == "/set":
            key, _, raw = rest.partition(" ")
            try:
                value = coerce_setting(key, raw)
                new = self.settings.update(**{key: value})
            except (ValueError, ValidationError) as e:
                self.out(f"[repl] {e}")
                return True
            self.out(f"[repl] {key}={getattr(new, key)}")
            return True

        if cmd == "/settings":
            self.out(json.dumps(self.settings.load().model_dump(), ensure_ascii=False))
            return True

        if cmd == "/roster":
            for c in self.roster.candidates():
                self.out(f"  {c.id}: {c.display_name}")
            return True

        if cmd == "/debug":
            on = rest.lower() in ("on", "true", "1")
            logging.getLogger("Services").setLevel(logging.DEBUG if on else logging.INFO)
            self.out(f"[repl] debug={on}")
            return True

        self.out(f"[repl] Unknown command: {s}")
        return True


def build_generator() -> IReplyGenerator:
    if not os.environ.get("OPENAI_API_KEY"):
        return TemplateReplyGenerator()

    from Infra.openai_reply_generator import OpenAIReplyGenerator

    return OpenAIReplyGenerator(model=os.environ.get("ENSEMBLE_MODEL", "gpt-4o"))


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    cast = load_cast(os.environ.get("ENSEMBLE_CAST", "cast.json")) or DEMO_CAST
    roster = GroupRoster(characters=cast, members=[c.id for c in cast], group_id="repl")

    session = ReplSession(
        roster=roster,
        transcript=JSONLTranscriptStore(path="group_transcript.jsonl"),
        settings=SQLiteSettingsStore(db_path="ensemble_settings.db"),
        generator=build_generator(),
    )

    print("Ensemble REPL (group chat with automatic turn-taking)")
    print("Type /help for commands.")
    print()

    try:
        while True:
            try:
                line = input("> ")
            except EOFError:
                break
            if not session.handle_line(line):
                break
    except KeyboardInterrupt:
        pass
    print("Bye.")


if __name__ == "__main__":
    main()
