"""Tests for the confidence decision engine.

Tests cover:
- Keyword extraction and document scoring
- Confidence adjustment and clamping
- Response parsing
- Knowledge tier, reasoning tier, retries and fallback
- The escalation flag
"""

import json
import random

import pytest

from story_pipeline.decision import (
    ConfidenceDecisionEngine, ResponseParseError, adjust_confidence, build_prompt,
    extract_keywords, match_score, parse_response,
)
from story_pipeline.errors import AuthFault, ConfigurationError, NetworkFault
from story_pipeline.models import DecisionConfig, DecisionSource
from story_pipeline.retry import RetryPolicy


CONTEXT = {"story": "STORY-1", "environment": "staging"}


class MockBackend:
    """Reasoning backend returning scripted responses, then a default."""

    def __init__(self, responses=None, default=None):
        self.responses = list(responses or [])
        self.default = default or json.dumps({
            "answer": "Use the staging database",
            "confidence": 0.8,
            "reasoning": "The story explicitly targets staging and production access is not granted to it.",
        })
        self.calls = []

    async def complete(self, prompt, *, temperature, max_tokens, system_prompt=None):
        self.calls.append({"prompt": prompt, "temperature": temperature, "max_tokens": max_tokens,
                           "system_prompt": system_prompt})
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return self.default


def make_engine(backend=None, fake_sleep=None, **config):
    kwargs = {"sleep": fake_sleep} if fake_sleep else {}
    return ConfidenceDecisionEngine(
        backend=backend,
        config=DecisionConfig(**config),
        retry_policy=RetryPolicy(rng=random.Random(1)),
        **kwargs,
    )


class TestKeywords:
    def test_extract_keywords_drops_stop_words(self):
        assert extract_keywords("Is the migration required for staging?") == ["migration", "required", "staging"]

    def test_short_words_dropped(self):
        assert extract_keywords("Is X ok?") == []

    def test_match_score(self):
        assert match_score("Migrations are required.", ["migrations", "required"]) == 1.0
        assert match_score("Migrations are optional.", ["migrations", "required"]) == 0.5
        assert match_score("anything", []) == 0.0


class TestAdjustConfidence:
    LONG = "The answer follows from the deployment policy that covers every staging environment."

    def test_high_certainty_raises(self):
        assert adjust_confidence("definitely", self.LONG, 0.7) == pytest.approx(0.8)

    def test_hedging_lowers(self):
        assert adjust_confidence("maybe", self.LONG, 0.8) == pytest.approx(0.6)

    def test_missing_context_lowers(self):
        assert adjust_confidence("yes", self.LONG + " Some details are missing.", 0.8) == pytest.approx(0.65)

    def test_short_reasoning_lowers(self):
        assert adjust_confidence("yes", "short", 0.8) == pytest.approx(0.75)

    def test_clamped_to_bounds(self):
        assert adjust_confidence("definitely", self.LONG, 1.0) == 0.9
        assert adjust_confidence("maybe, unsure", "need more", 0.0) == 0.3


class TestParseResponse:
    def test_parses_embedded_json(self):
        text = 'Here is my decision:\n{"answer": "yes", "confidence": 0.7, "reasoning": "because"}\nThanks'
        assert parse_response(text) == ("yes", 0.7, "because")

    def test_accepts_decision_key_and_defaults(self):
        answer, confidence, reasoning = parse_response('{"decision": "no"}')
        assert answer == "no"
        assert confidence == 0.5
        assert reasoning == "No reasoning provided"

    def test_confidence_clamped(self):
        assert parse_response('{"answer": "yes", "confidence": 3}')[1] == 1.0

    @pytest.mark.parametrize("text", [
        "no json here",
        "{not json}",
        '{"confidence": 0.9}',
        '{"answer": "yes", "confidence": "high"}',
    ])
    def test_unusable_responses(self, text):
        with pytest.raises(ResponseParseError):
            parse_response(text)

    def test_build_prompt_includes_context(self):
        prompt = build_prompt("Ship it?", {"tests": {"passed": 3}})
        assert "Question: Ship it?" in prompt
        assert 'tests: {"passed": 3}' in prompt
        assert '"confidence"' in prompt


class TestDecideArguments:
    def test_empty_question_rejected_before_await(self):
        engine = make_engine()
        with pytest.raises(ValueError):
            engine.decide("  ", CONTEXT)

    def test_empty_context_rejected_before_await(self):
        engine = make_engine()
        with pytest.raises(ValueError):
            engine.decide("Is X required?", {})


class TestKnowledgeTier:
    @pytest.mark.asyncio
    async def test_matching_document_answers(self, tmp_path):
        """Scenario C: a matching reference document gives 0.95 without escalation."""
        doc = tmp_path / "policy.md"
        doc.write_text("# Policy\n\nUnrelated intro.\n\nX is required for every release.\n")
        backend = MockBackend()
        engine = make_engine(backend, knowledge_paths=[str(doc)])

        decision = await engine.decide("Is X required?", CONTEXT)

        assert decision.confidence == 0.95
        assert decision.source == DecisionSource.KNOWLEDGE_BASE
        assert decision.requires_escalation is False
        assert decision.answer == "X is required for every release."
        assert "policy.md" in decision.reasoning
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_directory_is_searched(self, tmp_path):
        (tmp_path / "docs").mkdir()
        (tmp_path / "docs" / "deploy.txt").write_text("Rollbacks require approval from the on-call lead.")
        (tmp_path / "docs" / "image.png").write_bytes(b"\x89PNG rollbacks approval")
        engine = make_engine(MockBackend(), knowledge_paths=[str(tmp_path / "docs")])

        decision = await engine.decide("Do rollbacks need approval?", CONTEXT)

        assert decision.source == DecisionSource.KNOWLEDGE_BASE
        assert "deploy.txt" in decision.reasoning

    @pytest.mark.asyncio
    async def test_irrelevant_documents_fall_through(self, tmp_path):
        doc = tmp_path / "style.md"
        doc.write_text("Use four spaces for indentation.")
        backend = MockBackend()
        engine = make_engine(backend, knowledge_paths=[str(doc)])

        decision = await engine.decide("Is X required?", CONTEXT)

        assert decision.source == DecisionSource.REASONING_TIER
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_unreadable_document_skipped(self, tmp_path):
        (tmp_path / "broken.md").write_bytes(b"\xff\xfe required \xff")
        (tmp_path / "good.md").write_text("X is required.")
        engine = make_engine(MockBackend(), knowledge_paths=[str(tmp_path)])

        decision = await engine.decide("Is X required?", CONTEXT)

        assert decision.source == DecisionSource.KNOWLEDGE_BASE
        assert "good.md" in decision.reasoning


class TestReasoningTier:
    @pytest.mark.asyncio
    async def test_reasoning_answer(self):
        backend = MockBackend()
        engine = make_engine(backend, temperature=0.2, max_tokens=500)

        decision = await engine.decide("Which database should the tests use?", CONTEXT)

        assert decision.source == DecisionSource.REASONING_TIER
        assert decision.answer == "Use the staging database"
        assert decision.confidence == pytest.approx(0.8)
        assert decision.requires_escalation is False
        assert backend.calls[0]["temperature"] == 0.2
        assert backend.calls[0]["max_tokens"] == 500
        assert backend.calls[0]["system_prompt"]

    @pytest.mark.asyncio
    async def test_confidence_never_exceeds_ceiling(self):
        backend = MockBackend(default=json.dumps({
            "answer": "definitely yes",
            "confidence": 1.0,
            "reasoning": "I am completely certain because the policy document states it in those exact words.",
        }))
        decision = await make_engine(backend).decide("Ship it?", CONTEXT)

        assert decision.confidence == 0.9

    @pytest.mark.asyncio
    async def test_low_confidence_flagged_for_escalation(self):
        backend = MockBackend(default=json.dumps({
            "answer": "perhaps",
            "confidence": 0.6,
            "reasoning": "unclear",
        }))
        decision = await make_engine(backend).decide("Ship it?", CONTEXT)

        assert decision.requires_escalation is True
        assert decision.confidence >= 0.3
        assert "[ESCALATION REQUIRED" in decision.reasoning

    @pytest.mark.asyncio
    async def test_unparseable_response_retried(self, fake_sleep, sleeps):
        backend = MockBackend(responses=["I think yes", "still no json"])
        engine = make_engine(backend, fake_sleep)

        decision = await engine.decide("Ship it?", CONTEXT)

        assert decision.answer == "Use the staging database"
        assert len(backend.calls) == 3
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_transient_backend_fault_retried(self, fake_sleep, sleeps):
        backend = MockBackend(responses=[NetworkFault("connection reset")])
        engine = make_engine(backend, fake_sleep)

        decision = await engine.decide("Ship it?", CONTEXT)

        assert decision.source == DecisionSource.REASONING_TIER
        assert decision.answer == "Use the staging database"
        assert len(sleeps) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_fall_back(self, fake_sleep, sleeps):
        backend = MockBackend(default="never json")
        engine = make_engine(backend, fake_sleep)

        decision = await engine.decide("Ship it?", CONTEXT)

        assert decision.confidence == 0.5
        assert decision.answer == "undetermined"
        assert decision.requires_escalation is True
        assert len(backend.calls) == 4
        assert len(sleeps) == 3

    @pytest.mark.asyncio
    async def test_fatal_backend_fault_falls_back_immediately(self, fake_sleep, sleeps):
        backend = MockBackend(responses=[AuthFault("invalid api key")])
        engine = make_engine(backend, fake_sleep)

        decision = await engine.decide("Ship it?", CONTEXT)

        assert decision.confidence == 0.5
        assert sleeps == []
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_programmer_errors_propagate(self):
        backend = MockBackend(responses=[ConfigurationError("no model configured")])
        with pytest.raises(ConfigurationError):
            await make_engine(backend).decide("Ship it?", CONTEXT)

    @pytest.mark.asyncio
    async def test_no_backend_falls_back(self):
        decision = await make_engine().decide("Ship it?", CONTEXT)

        assert decision.confidence == 0.5
        assert decision.requires_escalation is True
