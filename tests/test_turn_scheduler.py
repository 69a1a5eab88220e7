# tests/test_turn_scheduler.py
from __future__ import annotations

from typing import Any, Callable, List, Optional, Tuple

import pytest

import Services.turn_scheduler as sched_mod
from Domain.constants import SchedulerPhase
from Domain.models import CharacterCard, SchedulerState
from Domain.schemas import EnsembleSettings
from Infra.sqlite_settings_store import InMemorySettingsSource
from Services.candidate_scorer import CandidateScorer
from Services.generation_host import InMemoryTranscript
from Services.roster import GroupRoster
from Services.turn_scheduler import SchedulerConfig, TurnScheduler


# ----------------------------
# Global test hygiene
# ----------------------------

@pytest.fixture(autouse=True)
def _no_real_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    """on_generation_ended() waits for the transcript to settle; never block tests."""
    monkeypatch.setattr(sched_mod.time, "sleep", lambda _s: None)


# ----------------------------
# Stubs / fakes
# ----------------------------

ALICE = CharacterCard(id="alice", name="Alice", description="A philosophy student.")
BOB = CharacterCard(id="bob", name="Bob", description="A blacksmith who forges swords.")
CAROL = CharacterCard(id="carol", name="Carol", description="A merchant.")


class FakeHost:
    def __init__(self, *, fail: bool = False):
        self.dispatched: List[Tuple[str, Optional[str]]] = []
        self.ended: List[Callable[[], Any]] = []
        self.before: List[Callable[[Any], Any]] = []
        self.fail = fail
        self.phase_at_dispatch: List[SchedulerPhase] = []
        self.scheduler: Optional[TurnScheduler] = None

    def dispatch_turn(self, candidate_id: str, instruction: Optional[str]) -> None:
        if self.fail:
            raise RuntimeError("transport down")
        if self.scheduler is not None:
            self.phase_at_dispatch.append(self.scheduler.phase)
        self.dispatched.append((candidate_id, instruction))

    def on_generation_ended(self, cb: Callable[[], Any]) -> None:
        self.ended.append(cb)

    def on_before_generation(self, cb: Callable[[Any], Any]) -> None:
        self.before.append(cb)


def zero_noise(lo: int, hi: int) -> int:
    return 0


def make(
    *,
    cards=(ALICE, BOB, CAROL),
    members=None,
    group_id: Optional[str] = "g1",
    noise=zero_noise,
    host: Optional[FakeHost] = None,
    **settings,
):
    params = {"enabled": True, "threshold": 10, "talkativeness": 1.0, "max_turns": 5}
    params.update(settings)

    transcript = InMemoryTranscript()
    roster = GroupRoster(
        characters=list(cards),
        members=list(members) if members is not None else [c.id for c in cards],
        group_id=group_id,
    )
    host = host or FakeHost()
    sched = TurnScheduler(
        transcript=transcript,
        roster=roster,
        host=host,
        settings=InMemorySettingsSource(EnsembleSettings(**params)),
        scorer=CandidateScorer(noise=noise),
        cfg=SchedulerConfig(settle_delay_s=0.5),
    )
    host.scheduler = sched
    return sched, transcript, host


def say(transcript: InMemoryTranscript, card: CharacterCard, text: str) -> None:
    transcript.append(card.id, text, speaker_name=card.name)


# ============================================================
# No-op passes
# ============================================================

def test_disabled_is_idle():
    sched, tr, host = make(enabled=False)
    tr.append_user("hi")
    say(tr, ALICE, "Bob?")
    d = sched.evaluate()
    assert d.phase == SchedulerPhase.IDLE
    assert d.reason == "disabled"
    assert host.dispatched == []


def test_no_group_context_is_idle():
    sched, tr, host = make(group_id=None)
    say(tr, ALICE, "Bob?")
    assert sched.evaluate().reason == "no_group"
    assert host.dispatched == []


def test_empty_transcript_is_idle():
    sched, _, host = make()
    d = sched.evaluate()
    assert d.phase == SchedulerPhase.IDLE
    assert d.reason == "empty_transcript"
    assert host.dispatched == []


def test_user_message_resets_budget():
    sched, tr, _ = make()
    sched.state.auto_turn_count = 4
    tr.append_user("I'm back")
    d = sched.evaluate()
    assert d.phase == SchedulerPhase.IDLE
    assert sched.state.auto_turn_count == 0


# ============================================================
# Normal path
# ============================================================

def test_keywords_are_taken_from_the_last_message_only():
    # "I agree" carries no keyword, so the earlier "swords" does not help Bob.
    sched, tr, host = make(cards=(ALICE, BOB), threshold=10)
    tr.append_user("Let's talk about swords")
    say(tr, ALICE, "I agree")

    d = sched.evaluate()

    assert [s.candidate.id for s in d.ranking] == ["bob"]  # alice excluded as last speaker
    assert d.ranking[0].breakdown.keyword == 0
    assert d.ranking[0].breakdown.recency == 0
    assert d.phase == SchedulerPhase.SUPPRESSED
    assert host.dispatched == []


def test_swords_scenario_selects_bob_with_keyword_bonus():
    sched, tr, host = make(cards=(ALICE, BOB), threshold=10)
    tr.append_user("Let's talk about swords")
    say(tr, ALICE, "I agree about swords")

    d = sched.evaluate()
    assert d.winner.breakdown.keyword == 20
    assert d.winner.breakdown.recency == 0
    assert d.winner.score == 20
    assert host.dispatched == [("bob", "[Instruction: You are replying to Alice. Be brief.]")]


def test_swords_scenario_selection_depends_on_noise():
    # total = 20 + noise; threshold 10 -> selected iff noise > -10
    for noise_value, expected in [(-10, SchedulerPhase.SUPPRESSED), (-9, SchedulerPhase.SELECTED)]:
        sched, tr, host = make(cards=(ALICE, BOB), threshold=10, noise=lambda lo, hi, v=noise_value: v)
        tr.append_user("Let's talk about swords")
        say(tr, ALICE, "Swords are great")
        assert sched.evaluate().phase == expected


def test_below_threshold_is_suppressed_without_dispatch_or_instruction():
    sched, tr, host = make(threshold=50)
    tr.append_user("hello")
    say(tr, ALICE, "hi")
    d = sched.evaluate()
    assert d.phase == SchedulerPhase.SUPPRESSED
    assert d.reason == "below_threshold"
    assert len(d.ranking) == 2
    assert host.dispatched == []
    assert sched.channel.consume() is None


def test_winner_instruction_is_placed_in_channel():
    sched, tr, host = make()
    tr.append_user("hello")
    say(tr, ALICE, "Bob, your turn")
    d = sched.evaluate()
    assert d.winner.candidate.id == "bob"
    assert sched.channel.consume() == d.instruction
    assert host.phase_at_dispatch == [SchedulerPhase.AWAITING_DECISION]
    assert sched.phase == SchedulerPhase.IDLE


def test_last_speaker_never_selected_even_if_mentioned():
    sched, tr, host = make()
    tr.append_user("hello")
    say(tr, ALICE, "Alice here, talking about Alice")
    d = sched.evaluate()
    assert all(s.candidate.id != "alice" for s in d.ranking)


def test_unknown_roster_members_are_skipped():
    sched, tr, host = make(members=["ghost", "bob"])
    tr.append_user("hello")
    say(tr, ALICE, "Bob?")
    d = sched.evaluate()
    assert [s.candidate.id for s in d.ranking] == ["bob"]
    assert host.dispatched[0][0] == "bob"


# ============================================================
# Budget
# ============================================================

def test_budget_exhausted_suppresses_until_user_speaks():
    sched, tr, host = make(max_turns=2)
    tr.append_user("hello")
    say(tr, ALICE, "Bob?")

    assert sched.evaluate().phase == SchedulerPhase.SELECTED
    say(tr, BOB, "Carol?")
    assert sched.evaluate().phase == SchedulerPhase.SELECTED
    say(tr, CAROL, "Alice?")
    d = sched.evaluate()
    assert d.phase == SchedulerPhase.SUPPRESSED
    assert d.reason == "max_turns_reached"
    assert len(host.dispatched) == 2

    # still suppressed even with a strong candidate
    say(tr, CAROL, "Bob! Bob!")
    assert sched.evaluate().phase == SchedulerPhase.SUPPRESSED

    tr.append_user("ok, go on")
    assert sched.evaluate().phase == SchedulerPhase.IDLE
    assert sched.state.auto_turn_count == 0

    say(tr, ALICE, "Bob?")
    assert sched.evaluate().phase == SchedulerPhase.SELECTED


def test_auto_turn_count_is_monotone_until_reset():
    sched, tr, _ = make(max_turns=10, threshold=1000)
    tr.append_user("hello")
    counts = []
    for i in range(4):
        say(tr, ALICE if i % 2 == 0 else BOB, "...")
        sched.evaluate()
        counts.append(sched.state.auto_turn_count)
    assert counts == [1, 2, 3, 4]


def test_max_turns_zero_blocks_all_automatic_turns():
    sched, tr, host = make(max_turns=0)
    tr.append_user("hello")
    say(tr, ALICE, "Bob?")
    assert sched.evaluate().phase == SchedulerPhase.SUPPRESSED
    assert host.dispatched == []


# ============================================================
# Operator directive
# ============================================================

def test_direct_ignores_threshold_and_budget():
    sched, tr, host = make(threshold=1000, max_turns=0)
    tr.append_user("hello")
    say(tr, ALICE, "hi")

    d = sched.direct("Argue about money")

    assert d.phase == SchedulerPhase.SELECTED
    assert d.reason == "override"
    assert host.dispatched == [(d.winner.candidate.id, "Argue about money")]
    assert d.winner.candidate.id != "alice"
    assert sched.channel.consume() == "Argue about money"
    assert host.phase_at_dispatch == [SchedulerPhase.OVERRIDDEN]


def test_direct_ignores_enabled_flag():
    sched, tr, host = make(enabled=False)
    say(tr, ALICE, "hi")
    assert sched.direct("Speak up").dispatched is True


def test_direct_does_not_touch_budget():
    sched, tr, host = make()
    say(tr, ALICE, "hi")
    sched.state.auto_turn_count = 3
    sched.direct("x")
    assert sched.state.auto_turn_count == 3


def test_direct_with_empty_roster_does_nothing():
    sched, tr, host = make(cards=(), members=[])
    tr.append_user("hello")
    d = sched.direct("Argue about money")
    assert d.dispatched is False
    assert d.reason == "override_no_candidate"
    assert host.dispatched == []
    assert sched.channel.consume() is None


def test_direct_on_empty_transcript_picks_first_member():
    sched, tr, host = make()
    d = sched.direct("Open the scene")
    assert d.winner.candidate.id == "alice"
    assert host.dispatched == [("alice", "Open the scene")]


def test_direct_with_explicit_target():
    sched, tr, host = make()
    say(tr, ALICE, "hi")
    d = sched.direct("Tell a joke", target_id="carol")
    assert host.dispatched == [("carol", "Tell a joke")]
    assert d.winner.candidate.id == "carol"


def test_direct_with_unknown_target_is_dropped():
    sched, tr, host = make()
    say(tr, ALICE, "hi")
    d = sched.direct("Tell a joke", target_id="nobody")
    assert d.reason == "override_target_unresolved"
    assert host.dispatched == []
    assert sched.channel.consume() is None


# ============================================================
# Queued override
# ============================================================

def test_queued_override_is_applied_once_on_next_pass():
    sched, tr, host = make(threshold=1000)
    tr.append_user("hello")
    say(tr, ALICE, "hi")
    sched.queue_override("Change the subject")

    d1 = sched.evaluate()
    assert d1.phase == SchedulerPhase.SELECTED
    assert d1.instruction == "Change the subject"
    assert sched.state.pending_override is None

    say(tr, BOB, "ok")
    d2 = sched.evaluate()
    assert d2.phase == SchedulerPhase.SUPPRESSED  # back to threshold rules
    assert len(host.dispatched) == 1


def test_queued_override_respects_budget():
    sched, tr, host = make(max_turns=0)
    tr.append_user("hello")
    say(tr, ALICE, "hi")
    sched.queue_override("Change the subject")
    assert sched.evaluate().reason == "max_turns_reached"
    assert host.dispatched == []
    assert sched.state.pending_override is not None


def test_queued_override_with_empty_roster_leaks_no_instruction():
    sched, tr, host = make(cards=(), members=[])
    tr.append_user("hello")
    tr.append("ghost", "boo", speaker_name="Ghost")
    sched.queue_override("Argue about money")
    d = sched.evaluate()
    assert d.dispatched is False
    assert sched.state.pending_override is None
    assert sched.channel.consume() is None


# ============================================================
# Wiring / failures
# ============================================================

def test_attach_registers_hooks():
    sched, tr, host = make()
    sched.attach()
    assert host.ended == [sched.on_generation_ended]
    assert host.before == [sched.channel.inject]


def test_on_generation_ended_waits_then_evaluates(monkeypatch: pytest.MonkeyPatch):
    slept = []
    monkeypatch.setattr(sched_mod.time, "sleep", lambda s: slept.append(s))
    sched, tr, host = make()
    tr.append_user("hello")
    say(tr, ALICE, "Bob?")
    d = sched.on_generation_ended()
    assert slept == [0.5]
    assert d.dispatched is True


def test_dispatch_failure_is_contained_and_clears_instruction():
    sched, tr, host = make(host=FakeHost(fail=True))
    tr.append_user("hello")
    say(tr, ALICE, "Bob?")
    d = sched.evaluate()
    assert d.phase == SchedulerPhase.SUPPRESSED
    assert d.reason == "dispatch_failed"
    assert sched.channel.consume() is None


def test_state_is_per_scheduler_instance():
    shared = SchedulerState()
    a, tr_a, _ = make()
    b, tr_b, _ = make()
    assert a.state is not b.state
    c = TurnScheduler(
        transcript=tr_a, roster=a.roster, host=FakeHost(), settings=a.settings, state=shared,
    )
    assert c.state is shared


def test_duplicate_display_names_are_disambiguated_by_id():
    sam1 = CharacterCard(id="sam-1", name="Sam")
    sam2 = CharacterCard(id="sam-2", name="Sam")
    sched, tr, host = make(cards=(sam1, sam2), threshold=-1000)
    tr.append_user("hello")
    say(tr, sam1, "hi")
    d = sched.evaluate()
    assert [s.candidate.id for s in d.ranking] == ["sam-2"]
    assert d.winner.breakdown.recency == 0
