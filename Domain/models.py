# ensemble/Domain/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from Domain.constants import SchedulerPhase, USER_SENTINEL


# ----------------------------
# Transcript
# ----------------------------

@dataclass(frozen=True)
class Message:
    """
    A single transcript entry.
    speaker_id is a candidate id or USER_SENTINEL for the human operator.
    """
    speaker_id: str
    text: str
    position: int
    speaker_name: str = ""

    @property
    def is_user(self) -> bool:
        return self.speaker_id == USER_SENTINEL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "speaker_id": self.speaker_id,
            "speaker_name": self.speaker_name,
            "text": self.text,
            "position": self.position,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Message":
        return Message(
            speaker_id=str(d["speaker_id"]),
            text=str(d["text"]),
            position=int(d["position"]),
            speaker_name=str(d.get("speaker_name", "")),
        )


# ----------------------------
# Roster
# ----------------------------

@dataclass(frozen=True)
class Candidate:
    id: str
    display_name: str
    profile_text: str = ""


@dataclass(frozen=True)
class CharacterCard:
    """
    Roster entry as the host stores it.
    Profile text for keyword matching is description + first_message.
    """
    id: str
    name: str
    description: str = ""
    first_message: str = ""

    def to_candidate(self) -> Candidate:
        return Candidate(
            id=self.id,
            display_name=self.name,
            profile_text=(self.description or "") + (self.first_message or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "first_message": self.first_message,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "CharacterCard":
        return CharacterCard(
            id=str(d["id"]),
            name=str(d["name"]),
            description=str(d.get("description", "") or ""),
            first_message=str(d.get("first_message", "") or ""),
        )


# ----------------------------
# Scoring
# ----------------------------

@dataclass(frozen=True)
class ScoreBreakdown:
    mention: int = 0
    recency: int = 0
    keyword: int = 0
    noise: int = 0
    multiplier: float = 1.0

    @property
    def raw(self) -> int:
        return self.mention + self.recency + self.keyword + self.noise


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: Candidate
    score: float
    breakdown: ScoreBreakdown = field(default_factory=ScoreBreakdown)


# ----------------------------
# Scheduler state
# ----------------------------

@dataclass(frozen=True)
class Override:
    """Operator command forcing the next turn; target_id=None means 'best candidate'."""
    instruction: str
    target_id: Optional[str] = None


@dataclass
class SchedulerState:
    """
    Per-conversation scheduler state.

    - auto_turn_count: automatic turns since the last human message.
    - pending_override: set by an operator directive, consumed at most once.
    """
    auto_turn_count: int = 0
    pending_override: Optional[Override] = None

    def reset_budget(self) -> None:
        self.auto_turn_count = 0

    def take_override(self) -> Optional[Override]:
        ov, self.pending_override = self.pending_override, None
        return ov


@dataclass(frozen=True)
class TurnDecision:
    """
    Output of a single scheduling pass.
    """
    phase: SchedulerPhase
    reason: str
    winner: Optional[ScoredCandidate] = None
    instruction: Optional[str] = None
    ranking: Tuple[ScoredCandidate, ...] = ()

    @property
    def dispatched(self) -> bool:
        return self.phase == SchedulerPhase.SELECTED and self.winner is not None

    def to_debug(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "reason": self.reason,
            "winner": self.winner.candidate.display_name if self.winner else None,
            "instruction": self.instruction,
            "ranking": [(s.candidate.display_name, s.score) for s in self.ranking],
        }
