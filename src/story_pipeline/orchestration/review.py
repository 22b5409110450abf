"""The review gate between independent review and publication.

Both reviews and the test results go to the decision engine, which is asked
whether the story should be published. The gate proceeds only when all of
these hold:

- the independent reviewer reported no critical findings
- the combined confidence of both reviews reaches the proceed threshold
- the decision's confidence reaches the proceed threshold
- the decision does not require escalation
- the answer is affirmative
"""

import re
from dataclasses import dataclass, field
from typing import Any

from ..decision import ConfidenceDecisionEngine
from ..models import Decision, DecisionSource, IndependentReviewResult, SelfReviewResult


REVIEW_QUESTION = "Should this story proceed to publication?"

_AFFIRMATIVE = re.compile(r"^\W*(yes|proceed|approve[ds]?|approval|go|ship|lgtm|pass(es|ed)?)\b", re.IGNORECASE)


def is_affirmative(decision: Decision) -> bool:
    # Knowledge-tier answers are passages; only an explicit go-ahead counts
    return bool(_AFFIRMATIVE.match(decision.answer))


@dataclass
class ReviewVerdict:
    """Outcome of the review gate."""
    proceed: bool
    decision: Decision
    combined_confidence: float
    reasons: list[str] = field(default_factory=list)
    findings: list[str] = field(default_factory=list)

    def to_artifacts(self) -> dict[str, Any]:
        return {
            "proceed": self.proceed,
            "decision": self.decision.model_dump(mode="json"),
            "combined_confidence": self.combined_confidence,
            "reasons": list(self.reasons),
            "findings": list(self.findings),
        }


class ReviewGate:
    """Decides whether reviewed work may be published."""

    def __init__(self, engine: ConfidenceDecisionEngine, proceed_threshold: float = 0.85):
        self.engine = engine
        self.proceed_threshold = proceed_threshold

    async def evaluate(
        self,
        self_review: SelfReviewResult,
        independent_review: IndependentReviewResult,
        test_results: dict[str, Any],
    ) -> ReviewVerdict:
        combined = (self_review.confidence + independent_review.confidence) / 2
        context = {
            "self_review": self_review.model_dump(mode="json"),
            "independent_review": independent_review.model_dump(mode="json"),
            "test_results": test_results,
            "combined_review_confidence": round(combined, 3),
            "proceed_threshold": self.proceed_threshold,
        }
        decision = await self.engine.decide(REVIEW_QUESTION, context)

        reasons = []
        if independent_review.critical_findings:
            reasons.append(f"{len(independent_review.critical_findings)} critical finding(s) from independent review")
        if combined < self.proceed_threshold:
            reasons.append(
                f"Combined review confidence {combined:.2f} below proceed threshold {self.proceed_threshold}"
            )
        if decision.confidence < self.proceed_threshold:
            reasons.append(
                f"Decision confidence {decision.confidence:.2f} below proceed threshold {self.proceed_threshold}"
            )
        if decision.requires_escalation:
            reasons.append("Decision requires escalation")
        if not is_affirmative(decision):
            reasons.append(f"Decision answer is not affirmative: {decision.answer[:120]}")

        findings = [f"Critical: {f}" for f in independent_review.critical_findings]
        findings += independent_review.recommendations
        findings += self_review.findings
        if reasons and decision.source == DecisionSource.REASONING_TIER:
            findings.append(f"Reviewer reasoning: {decision.reasoning}")

        return ReviewVerdict(
            proceed=not reasons,
            decision=decision,
            combined_confidence=combined,
            reasons=reasons,
            findings=findings,
        )
