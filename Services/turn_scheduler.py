# ensemble/Services/turn_scheduler.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Sequence

from Domain.constants import SchedulerPhase
from Domain.models import (
    Candidate,
    Message,
    Override,
    SchedulerState,
    ScoredCandidate,
    TurnDecision,
)
from Domain.schemas import EnsembleSettings
from Services.candidate_scorer import CandidateScorer
from Services.instruction_channel import InstructionChannel

logger = logging.getLogger(__name__)


# ----------------------------
# Protocols (ports)
# ----------------------------

class ITranscript(Protocol):
    def messages(self) -> Sequence[Message]: ...


class IRoster(Protocol):
    def is_active(self) -> bool: ...
    def candidates(self) -> List[Candidate]: ...


class IGenerationHost(Protocol):
    """Capabilities the host environment exposes to the scheduler."""
    def dispatch_turn(self, candidate_id: str, instruction: Optional[str]) -> None: ...
    def on_generation_ended(self, cb: Callable[[], Any]) -> None: ...
    def on_before_generation(self, cb: Callable[[Any], Any]) -> None: ...


class ISettingsSource(Protocol):
    def load(self) -> EnsembleSettings: ...


# ----------------------------
# Scheduler
# ----------------------------

@dataclass
class SchedulerConfig:
    # Pause before re-evaluating after a generation, so transcript appends land first.
    settle_delay_s: float = 1.0


class TurnScheduler:
    """
    Decides, each time the floor is free, whether another participant speaks.

    Two entry points:
      - on_generation_ended(): automatic path (enabled flag, budget, threshold).
      - direct(instruction): operator path (ignores enabled, budget and threshold).

    Each pass runs to completion before anything is dispatched; the host performs
    the actual generation later and reads the instruction via inject().
    """

    def __init__(
        self,
        *,
        transcript: ITranscript,
        roster: IRoster,
        host: IGenerationHost,
        settings: ISettingsSource,
        scorer: Optional[CandidateScorer] = None,
        channel: Optional[InstructionChannel] = None,
        state: Optional[SchedulerState] = None,
        cfg: Optional[SchedulerConfig] = None,
    ):
        self.transcript = transcript
        self.roster = roster
        self.host = host
        self.settings = settings
        self.scorer = scorer or CandidateScorer()
        self.channel = channel or InstructionChannel()
        self.state = state if state is not None else SchedulerState()
        self.cfg = cfg or SchedulerConfig()
        self.phase = SchedulerPhase.IDLE
        self.last_decision: Optional[TurnDecision] = None

    def attach(self) -> "TurnScheduler":
        """Subscribe to the host's generation events."""
        self.host.on_generation_ended(self.on_generation_ended)
        self.host.on_before_generation(self.channel.inject)
        return self

    # ---------
    # Event handlers
    # ---------

    def on_generation_ended(self) -> TurnDecision:
        if self.cfg.settle_delay_s > 0:
            time.sleep(self.cfg.settle_delay_s)
        return self.evaluate()

    def evaluate(self) -> TurnDecision:
        """Automatic scheduling pass."""
        settings = self.settings.load()

        if not settings.enabled:
            return self._done(SchedulerPhase.IDLE, "disabled")
        if not self.roster.is_active():
            return self._done(SchedulerPhase.IDLE, "no_group")

        history = list(self.transcript.messages())
        if not history:
            return self._done(SchedulerPhase.IDLE, "empty_transcript")

        last = history[-1]
        if last.is_user:
            self.state.reset_budget()
            return self._done(SchedulerPhase.IDLE, "user_spoke")

        self.state.auto_turn_count += 1
        if self.state.auto_turn_count > settings.max_turns:
            logger.info("[Ensemble] Max auto-turns reached (%d).", settings.max_turns)
            return self._done(SchedulerPhase.SUPPRESSED, "max_turns_reached")

        override = self.state.take_override()
        if override is not None:
            logger.info("[Ensemble] Executing Director Override")
            return self._run_override(override, history, settings)

        # Normal path
        self.phase = SchedulerPhase.AWAITING_DECISION
        scored = self.scorer.score(history, self.roster.candidates(), settings.talkativeness)
        ranking = tuple(self.scorer.rank(scored))
        winner = self.scorer.pick_best(ranking, threshold=settings.threshold, respect_threshold=True)

        if winner is None:
            if ranking:
                top = ranking[0]
                logger.info(
                    "[Ensemble] No winner above threshold (%s). Top: %s (%s)",
                    settings.threshold, top.candidate.display_name, top.score,
                )
            return self._done(SchedulerPhase.SUPPRESSED, "below_threshold", ranking=ranking)

        logger.info("[Ensemble] Winner: %s with score %s", winner.candidate.display_name, winner.score)
        instruction = self.channel.set_default(last.speaker_name or last.speaker_id)
        return self._dispatch(winner, instruction, ranking, reason="above_threshold")

    def direct(self, instruction: str, target_id: Optional[str] = None) -> TurnDecision:
        """
        Operator directive: pick a speaker now and dispatch with `instruction`.
        Bypasses the enabled flag, the auto-turn budget and the threshold.
        """
        if not self.roster.is_active():
            return self._done(SchedulerPhase.IDLE, "no_group")

        settings = self.settings.load()
        history = list(self.transcript.messages())
        return self._run_override(Override(instruction=instruction, target_id=target_id), history, settings)

    def queue_override(self, instruction: str, target_id: Optional[str] = None) -> None:
        """Apply `instruction` on the next automatic pass instead of right away."""
        if self.state.pending_override is not None:
            logger.debug("[Ensemble] Replacing pending override %r", self.state.pending_override)
        self.state.pending_override = Override(instruction=instruction, target_id=target_id)

    # ---------
    # Helpers
    # ---------

    def _run_override(
        self,
        override: Override,
        history: Sequence[Message],
        settings: EnsembleSettings,
    ) -> TurnDecision:
        self.phase = SchedulerPhase.OVERRIDDEN
        candidates = self.roster.candidates()

        if override.target_id is not None:
            target = next((c for c in candidates if c.id == override.target_id), None)
            if target is None:
                logger.info("[Ensemble] Override target %r not in roster; dropped.", override.target_id)
                return self._done(SchedulerPhase.SUPPRESSED, "override_target_unresolved")
            winner = ScoredCandidate(candidate=target, score=0.0)
            ranking: tuple = ()
        else:
            if history:
                scored = self.scorer.score(history, candidates, settings.talkativeness)
            else:
                # Nothing said yet: everybody is eligible, no signal to score on.
                scored = [ScoredCandidate(candidate=c, score=0.0) for c in candidates]
            ranking = tuple(self.scorer.rank(scored))
            winner = self.scorer.pick_best(ranking, threshold=settings.threshold, respect_threshold=False)
            if winner is None:
                logger.info("[Ensemble] Override has no eligible candidate; dropped.")
                return self._done(SchedulerPhase.SUPPRESSED, "override_no_candidate")

        self.channel.set_pending(override.instruction)
        return self._dispatch(winner, override.instruction, ranking, reason="override")

    def _dispatch(
        self,
        winner: ScoredCandidate,
        instruction: Optional[str],
        ranking: tuple,
        *,
        reason: str,
    ) -> TurnDecision:
        try:
            self.host.dispatch_turn(winner.candidate.id, instruction)
        except Exception:
            logger.exception("[Ensemble] Dispatch failed for %s", winner.candidate.display_name)
            self.channel.clear()
            return self._done(SchedulerPhase.SUPPRESSED, "dispatch_failed", ranking=ranking)

        return self._done(
            SchedulerPhase.SELECTED,
            reason,
            winner=winner,
            instruction=instruction,
            ranking=ranking,
        )

    def _done(
        self,
        phase: SchedulerPhase,
        reason: str,
        *,
        winner: Optional[ScoredCandidate] = None,
        instruction: Optional[str] = None,
        ranking: tuple = (),
    ) -> TurnDecision:
        d = TurnDecision(phase=phase, reason=reason, winner=winner, instruction=instruction, ranking=ranking)
        self.last_decision = d
        self.phase = SchedulerPhase.IDLE
        logger.debug("[Ensemble] pass=%s", d.to_debug())
        return d
