# ensemble/Services/candidate_scorer.py
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from Domain.models import Candidate, Message, ScoreBreakdown, ScoredCandidate
from Services.lexical_matcher import has_keyword_overlap, has_mention
from Services.recency_tracker import turns_since

logger = logging.getLogger(__name__)

# (lo, hi) -> integer in the closed range [lo, hi]
NoiseSource = Callable[[int, int], int]


@dataclass
class ScorerConfig:
    """
    Scoring weights.

    recency_penalties maps "turns since last spoke" to a penalty; distances
    not listed (3+, never) cost nothing.
    """
    mention_bonus: int = 50
    keyword_bonus: int = 20
    recency_penalties: Dict[int, int] = field(default_factory=lambda: {1: -100, 2: -50})
    noise_amplitude: int = 10


class CandidateScorer:
    """
    Rule-based ranking of who should speak next.

    score = (mention + recency + keyword + noise) * talkativeness
    The last message's author is never scored.
    """

    def __init__(
        self,
        cfg: Optional[ScorerConfig] = None,
        *,
        seed: Optional[int] = None,
        noise: Optional[NoiseSource] = None,
    ):
        self.cfg = cfg or ScorerConfig()
        self._rng = random.Random(seed)
        self._noise = noise or self._rng.randint

    # ---------
    # Components
    # ---------

    def recency_penalty(self, distance: float) -> int:
        if distance in self.cfg.recency_penalties:
            return self.cfg.recency_penalties[int(distance)]
        return 0

    def draw_noise(self) -> int:
        a = int(self.cfg.noise_amplitude)
        return int(self._noise(-a, a))

    # ---------
    # Public API
    # ---------

    def score(
        self,
        history: Sequence[Message],
        candidates: Sequence[Candidate],
        talkativeness: float = 1.0,
    ) -> List[ScoredCandidate]:
        """One entry per eligible candidate, in roster order."""
        if not history:
            return []

        last = history[-1]
        out: List[ScoredCandidate] = []

        for c in candidates:
            if c.id == last.speaker_id:
                continue

            mention = self.cfg.mention_bonus if has_mention(last.text, c.display_name) else 0
            recency = self.recency_penalty(turns_since(history, c.id))
            keyword = self.cfg.keyword_bonus if has_keyword_overlap(last.text, c.profile_text) else 0
            noise = self.draw_noise()

            bd = ScoreBreakdown(
                mention=mention,
                recency=recency,
                keyword=keyword,
                noise=noise,
                multiplier=float(talkativeness),
            )
            total = bd.raw * bd.multiplier
            logger.info(
                "[Ensemble] Candidate: %s, Score: %s (mention=%d recency=%d keyword=%d noise=%d x%s)",
                c.display_name, total, mention, recency, keyword, noise, bd.multiplier,
            )
            out.append(ScoredCandidate(candidate=c, score=total, breakdown=bd))

        return out

    @staticmethod
    def rank(scored: Sequence[ScoredCandidate]) -> List[ScoredCandidate]:
        # sorted() is stable: ties keep roster order
        return sorted(scored, key=lambda s: s.score, reverse=True)

    @staticmethod
    def pick_best(
        scored: Sequence[ScoredCandidate],
        *,
        threshold: float,
        respect_threshold: bool = True,
    ) -> Optional[ScoredCandidate]:
        """
        Highest score wins (first in roster order on ties).
        With respect_threshold the winner must score strictly above threshold.
        """
        ranked = CandidateScorer.rank(scored)
        if not ranked:
            return None
        best = ranked[0]
        if respect_threshold and not best.score > threshold:
            return None
        return best
