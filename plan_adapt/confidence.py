"""Confidence aggregation across the reasoning, planning and critique stages.

The overall confidence is a weighted mean of per-agent scores, rounded to
six decimals.  Bands are closed below, so a value equal to a threshold
falls in the higher band::

    >= 0.8  execute
    >= 0.6  review
    >= 0.4  rethink
    <  0.4  escalate

The escalate threshold (0.2) is reported with every decision but does not
split the lowest band.
"""

from __future__ import annotations

from typing import Iterable

from .models import ConfidenceDecision, ConfidenceScore, Recommendation

DEFAULT_WEIGHTS: dict[str, float] = {
    "thought-agent": 0.25,
    "planner-agent": 0.30,
    "critic-agent": 0.35,
    "meta-agent": 0.10,
}
DEFAULT_WEIGHT = 0.10

THRESHOLDS: dict[str, float] = {
    "execute": 0.8,
    "review": 0.6,
    "rethink": 0.4,
    "escalate": 0.2,
}

CONCERN_THRESHOLD = 0.4
EMPTY_CONFIDENCE = 0.5


class ConfidenceAggregator:
    def __init__(
        self,
        weights: dict[str, float] | None = None,
        default_weight: float = DEFAULT_WEIGHT,
        thresholds: dict[str, float] | None = None,
    ) -> None:
        self.weights = dict(DEFAULT_WEIGHTS if weights is None else weights)
        self.default_weight = default_weight
        self.thresholds = dict(THRESHOLDS if thresholds is None else thresholds)

    def weight_for(self, agent_name: str) -> float:
        return self.weights.get(agent_name, self.default_weight)

    def decide(self, confidence: float) -> Recommendation:
        if confidence >= self.thresholds["execute"]:
            return Recommendation.EXECUTE
        if confidence >= self.thresholds["review"]:
            return Recommendation.REVIEW
        if confidence >= self.thresholds["rethink"]:
            return Recommendation.RETHINK
        return Recommendation.ESCALATE

    def aggregate(self, scores: Iterable[ConfidenceScore]) -> ConfidenceDecision:
        """Combine scores into a routing decision.

        Raises:
            ValueError: if any score lies outside [0, 1].
        """
        scores = list(scores)
        for s in scores:
            if not 0.0 <= s.score <= 1.0:
                raise ValueError(f"confidence score for {s.agent_name} out of range: {s.score}")

        if not scores:
            overall = simple = EMPTY_CONFIDENCE
        else:
            total_weight = sum(self.weight_for(s.agent_name) for s in scores)
            weighted = sum(s.score * self.weight_for(s.agent_name) for s in scores)
            overall = round(weighted / total_weight, 6) if total_weight > 0 else EMPTY_CONFIDENCE
            simple = round(sum(s.score for s in scores) / len(scores), 6)

        decision = self.decide(overall)

        primary = None
        if scores:
            # Largest weighted pull away from the neutral midpoint.
            driver = max(
                scores,
                key=lambda s: abs(s.score - EMPTY_CONFIDENCE) * self.weight_for(s.agent_name),
            )
            primary = driver.agent_name

        concerns = [
            f"{s.agent_name} confidence {s.score:.2f}"
            + (f": {s.reasoning}" if s.reasoning else "")
            for s in scores
            if s.score <= CONCERN_THRESHOLD
        ]

        if scores:
            reasoning = (
                f"Weighted confidence {overall:.3f} across {len(scores)} agent(s) "
                f"(simple mean {simple:.3f}) -> {decision.value}"
            )
        else:
            reasoning = f"No confidence scores; using neutral {overall:.1f} -> {decision.value}"

        return ConfidenceDecision(
            overall_confidence=overall,
            simple_mean=simple,
            decision=decision.value,
            thresholds=dict(self.thresholds),
            weights={s.agent_name: self.weight_for(s.agent_name) for s in scores},
            scores=scores,
            primary_driver=primary,
            concerns=concerns,
            reasoning=reasoning,
        )
