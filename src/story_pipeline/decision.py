"""Confidence decision engine.

Answers questions the pipeline cannot settle mechanically, in two tiers:

1. Knowledge tier: reference documents are searched for a passage matching
   the question's keywords. A match is trusted at a fixed high confidence.
2. Reasoning tier: a ReasoningBackend is asked for a JSON answer with a
   self-assessed confidence, which is then adjusted for the language used
   and clamped so the model can never claim certainty.

Any answer below the escalation threshold is flagged. The engine never
raises escalations itself; that is the caller's job.
"""

import asyncio
import json
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console

from .classifier import ErrorClass, ErrorClassifier
from .errors import PipelineProgrammerError
from .models import Decision, DecisionConfig, DecisionSource
from .protocols import ReasoningBackend
from .retry import RetryPolicy


console = Console()

SYSTEM_PROMPT = (
    "You are an autonomous decision-making assistant. "
    "Provide clear decisions with confidence assessments."
)

MIN_REASONING_CONFIDENCE = 0.3
MAX_REASONING_CONFIDENCE = 0.9

STOP_WORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were",
    "what", "how", "when", "where", "who", "why",
    "should", "could", "would", "will", "can",
    "do", "does", "did", "have", "has", "had",
    "be", "been", "being", "am", "to", "from",
    "in", "on", "at", "by", "for", "with", "about",
    "as", "of", "or", "and", "but", "if", "then",
})

HIGH_CERTAINTY_WORDS = ("definitely", "clearly", "certain", "confident", "sure")
HEDGING_WORDS = ("maybe", "perhaps", "might", "possibly", "unsure", "unclear")
MISSING_CONTEXT_PHRASES = ("missing", "insufficient", "need more")

KNOWLEDGE_SUFFIXES = (".md", ".txt")

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def extract_keywords(question: str) -> list[str]:
    """Lowercased words longer than two characters, minus stop words."""
    words = re.split(r"\W+", question.lower())
    return [w for w in words if len(w) > 2 and w not in STOP_WORDS]


def match_score(text: str, keywords: list[str]) -> float:
    """Fraction of keywords that appear in the text."""
    if not keywords:
        return 0.0
    lowered = text.lower()
    return sum(1 for k in keywords if k in lowered) / len(keywords)


def adjust_confidence(answer: str, reasoning: str, base: float, min_reasoning_chars: int = 50) -> float:
    """Adjust a self-reported confidence for the language used, then clamp."""
    text = f"{answer} {reasoning}".lower()
    adjustment = 0.0

    if any(w in text for w in HIGH_CERTAINTY_WORDS):
        adjustment += 0.1
    if any(w in text for w in HEDGING_WORDS):
        adjustment -= 0.2
    if any(p in text for p in MISSING_CONTEXT_PHRASES):
        adjustment -= 0.15
    if len(reasoning) < min_reasoning_chars:
        adjustment -= 0.05

    return max(MIN_REASONING_CONFIDENCE, min(MAX_REASONING_CONFIDENCE, base + adjustment))


def build_prompt(question: str, context: dict[str, Any]) -> str:
    """Render the question and its context for the reasoning backend."""
    context_lines = "\n".join(
        f"{key}: {json.dumps(value, default=str)}" for key, value in context.items()
    )
    return f"""Question: {question}

Context:
{context_lines}

Please provide a decision for this question. In your response, include:
1. Your answer
2. Your confidence level (0.0-1.0)
3. Your reasoning

Format your response as JSON:
{{
  "answer": "your answer here",
  "confidence": 0.8,
  "reasoning": "your reasoning here"
}}"""


class ResponseParseError(ValueError):
    """The reasoning backend's response had no usable JSON answer."""


def parse_response(response: str) -> tuple[str, float, str]:
    """Extract (answer, confidence, reasoning) from a backend response.

    Raises:
        ResponseParseError: no JSON object with an answer was found
    """
    match = _JSON_OBJECT.search(response or "")
    if not match:
        raise ResponseParseError("No JSON object in reasoning response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Invalid JSON in reasoning response: {e}") from e
    if not isinstance(parsed, dict):
        raise ResponseParseError("Reasoning response is not a JSON object")

    answer = parsed.get("answer", parsed.get("decision"))
    if answer is None or not str(answer).strip():
        raise ResponseParseError("Reasoning response has no answer")

    try:
        confidence = float(parsed.get("confidence", 0.5))
    except (TypeError, ValueError) as e:
        raise ResponseParseError(f"Confidence is not a number: {parsed.get('confidence')!r}") from e
    confidence = max(0.0, min(1.0, confidence))

    reasoning = str(parsed.get("reasoning") or "No reasoning provided")
    return str(answer), confidence, reasoning


class ConfidenceDecisionEngine:
    """Two-tier decision maker with an escalation gate.

    Args:
        backend: Reasoning backend for questions the documents do not answer
        config: Thresholds and tier settings
        retry_policy: Governs retries of unparseable or failed backend calls
        classifier: Classifies backend faults
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        backend: Optional[ReasoningBackend] = None,
        config: Optional[DecisionConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.config = config or DecisionConfig()
        self.retry_policy = retry_policy or RetryPolicy()
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep

    @property
    def escalation_threshold(self) -> float:
        return self.config.escalation_threshold

    def decide(self, question: str, context: dict[str, Any]) -> Awaitable[Decision]:
        """Answer a question.

        Arguments are checked before anything is awaited.

        Raises:
            ValueError: empty question or empty context
        """
        if not question or not question.strip():
            raise ValueError("Decision question cannot be empty")
        if not context:
            raise ValueError("Decision context cannot be empty")
        return self._decide(question, dict(context))

    async def _decide(self, question: str, context: dict[str, Any]) -> Decision:
        decision = self._consult_knowledge(question, context)
        if decision is None:
            decision = await self._reason(question, context)

        if decision.confidence < self.escalation_threshold:
            decision = decision.model_copy(update={
                "requires_escalation": True,
                "reasoning": (
                    f"{decision.reasoning} [ESCALATION REQUIRED: confidence "
                    f"{decision.confidence:.2f} < threshold {self.escalation_threshold}]"
                ),
            })

        console.print(
            f"[dim]Decision ({decision.source.value}, confidence {decision.confidence:.2f}"
            f"{', escalation required' if decision.requires_escalation else ''}): "
            f"{question}[/dim]"
        )
        return decision

    # -------------------------------------------------------------------------
    # Knowledge tier
    # -------------------------------------------------------------------------

    def _knowledge_documents(self) -> list[Path]:
        documents = []
        for raw in self.config.knowledge_paths:
            path = Path(raw)
            if path.is_dir():
                documents.extend(
                    sorted(p for p in path.rglob("*") if p.is_file() and p.suffix.lower() in KNOWLEDGE_SUFFIXES)
                )
            elif path.is_file():
                documents.append(path)
        return documents

    def _consult_knowledge(self, question: str, context: dict[str, Any]) -> Optional[Decision]:
        keywords = extract_keywords(question)
        if not keywords:
            return None

        best: Optional[tuple[float, Path, str]] = None
        for document in self._knowledge_documents():
            try:
                text = document.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                console.print(f"[yellow]Skipping unreadable reference document {document}: {e}[/yellow]")
                continue

            score = match_score(text, keywords)
            if score >= self.config.relevance_threshold and (best is None or score > best[0]):
                best = (score, document, text)

        if best is None:
            return None

        score, document, text = best
        return Decision(
            question=question,
            answer=self._best_passage(text, keywords),
            confidence=self.config.knowledge_confidence,
            source=DecisionSource.KNOWLEDGE_BASE,
            reasoning=f"Found explicit answer in reference document: {document.name} (relevance {score:.2f})",
            context=context,
        )

    @staticmethod
    def _best_passage(text: str, keywords: list[str]) -> str:
        passages = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
        if not passages:
            return text.strip()
        # max() keeps the first passage on ties, i.e. the earliest in the document
        return max(passages, key=lambda p: match_score(p, keywords))

    # -------------------------------------------------------------------------
    # Reasoning tier
    # -------------------------------------------------------------------------

    async def _reason(self, question: str, context: dict[str, Any]) -> Decision:
        if self.backend is None:
            return self._fallback(question, context, "No reasoning backend configured")

        prompt = build_prompt(question, context)
        retries = 0
        while True:
            try:
                response = await self.backend.complete(
                    prompt,
                    temperature=self.config.temperature,
                    max_tokens=self.config.max_tokens,
                    system_prompt=SYSTEM_PROMPT,
                )
                answer, confidence, reasoning = parse_response(response)
                break
            except PipelineProgrammerError:
                raise
            except ResponseParseError as e:
                error_class = ErrorClass.retryable("UNPARSEABLE_RESPONSE", str(e))
            except Exception as e:
                error_class = self.classifier.classify(e)

            if not self.retry_policy.should_retry(retries, error_class):
                return self._fallback(question, context, error_class.message)

            delay = self.retry_policy.next_delay(retries, error_class)
            console.print(
                f"[yellow]Reasoning attempt failed ({error_class.code}), retrying in {delay:.1f}s[/yellow]"
            )
            retries += 1
            await self._sleep(delay)

        return Decision(
            question=question,
            answer=answer,
            confidence=adjust_confidence(answer, reasoning, confidence, self.config.min_reasoning_chars),
            source=DecisionSource.REASONING_TIER,
            reasoning=reasoning,
            context=context,
        )

    def _fallback(self, question: str, context: dict[str, Any], why: str) -> Decision:
        console.print(f"[yellow]Reasoning unavailable, using fallback confidence: {why}[/yellow]")
        return Decision(
            question=question,
            answer="undetermined",
            confidence=self.config.fallback_confidence,
            source=DecisionSource.REASONING_TIER,
            reasoning=f"Unable to obtain a structured decision: {why}",
            context=context,
        )
