"""
Guardrail Pipeline tests

  Attach rule:   verdict lands on the most recently created assistant entry
  Fail-closed:   timeouts, classifier errors and bad output all flag
  Classifier:    Groq chat completion parsed as a JSON verdict
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from voice_session.config import GuardrailConfig
from voice_session.errors import GuardrailEvaluationError
from voice_session.guardrail import GroqModerationClassifier, GuardrailPipeline
from voice_session.models import GuardrailCategory, GuardrailResult, Role
from voice_session.transcript import TranscriptSynchronizer

TRIPPED = {"tripwireTriggered": True, "category": "VIOLENCE", "rationale": "threat of harm"}
CLEAN = {"tripwireTriggered": False, "category": "NONE", "rationale": "benign"}


def _classifier(verdict=None, side_effect=None):
    classifier = MagicMock()
    classifier.classify = AsyncMock(return_value=verdict, side_effect=side_effect)
    return classifier


def _groq_client(content: str):
    response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response)
    return client


class TestVerdictParsing:

    def test_camel_case_contract(self):
        result = GuardrailResult.from_verdict(TRIPPED)
        assert result.category is GuardrailCategory.VIOLENCE
        assert result.tripwire_triggered

    @pytest.mark.parametrize("raw", ["OffBrand", "off-brand", "OFF_BRAND", "off brand"])
    def test_category_spellings(self, raw):
        assert GuardrailCategory.parse(raw) is GuardrailCategory.OFF_BRAND

    def test_missing_tripwire_derived_from_category(self):
        assert GuardrailResult.from_verdict({"category": "OFFENSIVE", "rationale": "x"}).tripwire_triggered
        assert not GuardrailResult.from_verdict({"category": "NONE", "rationale": "x"}).tripwire_triggered

    def test_clean_verdict_without_rationale(self):
        result = GuardrailResult.from_verdict({"tripwireTriggered": False, "category": "NONE"})
        assert not result.tripwire_triggered
        assert result.rationale == ""

    def test_unknown_category_rejected(self):
        with pytest.raises(ValueError):
            GuardrailResult.from_verdict({"category": "SPAM", "rationale": "x"})


class TestAttachRule:

    def test_attaches_to_latest_assistant_entry(self):
        sync = TranscriptSynchronizer()
        sync.register("A", Role.USER)
        sync.register("B", Role.ASSISTANT)
        sync.register("C", Role.ASSISTANT)
        pipeline = GuardrailPipeline(sync)

        entry = pipeline.on_tripped(TRIPPED)

        assert entry.item_id == "C"
        assert sync.get("C").guardrail.category is GuardrailCategory.VIOLENCE
        assert sync.get("B").guardrail is None
        assert sync.get("A").guardrail is None

    def test_text_is_never_rewritten(self):
        sync = TranscriptSynchronizer()
        sync.register("B", Role.ASSISTANT, text="spoken words")
        GuardrailPipeline(sync).on_tripped(TRIPPED)
        assert sync.get("B").text == "spoken words"

    def test_dropped_without_assistant_entry(self):
        sync = TranscriptSynchronizer()
        sync.register("A", Role.USER)
        assert GuardrailPipeline(sync).on_tripped(TRIPPED) is None
        assert sync.get("A").guardrail is None

    def test_invalid_verdict_dropped(self):
        sync = TranscriptSynchronizer()
        sync.register("B", Role.ASSISTANT)
        assert GuardrailPipeline(sync).on_tripped({"category": "VIOLENCE"}) is None
        assert sync.get("B").guardrail is None

    def test_untripped_verdict_not_attached(self):
        sync = TranscriptSynchronizer()
        sync.register("B", Role.ASSISTANT)
        assert GuardrailPipeline(sync).on_tripped(CLEAN) is None
        assert sync.get("B").guardrail is None


class TestEvaluate:

    @pytest.mark.asyncio
    async def test_clean_verdict(self):
        pipeline = GuardrailPipeline(TranscriptSynchronizer(), _classifier(CLEAN))
        result = await pipeline.evaluate("Your bill is ready.")
        assert not result.tripwire_triggered
        assert result.category is GuardrailCategory.NONE

    @pytest.mark.asyncio
    async def test_tripped_verdict_carries_evidence(self):
        pipeline = GuardrailPipeline(TranscriptSynchronizer(), _classifier(TRIPPED))
        result = await pipeline.evaluate("I will hurt you")
        assert result.tripwire_triggered
        assert result.evidence_text == "I will hurt you"

    @pytest.mark.asyncio
    async def test_timeout_fails_closed(self):
        async def slow(text):
            await asyncio.sleep(1.0)
            return CLEAN

        classifier = MagicMock()
        classifier.classify = slow
        pipeline = GuardrailPipeline(TranscriptSynchronizer(), classifier, timeout_ms=50)
        result = await pipeline.evaluate("hello")
        assert result.tripwire_triggered
        assert result.category is GuardrailCategory.NONE
        assert "timed out" in result.rationale

    @pytest.mark.asyncio
    async def test_classifier_error_fails_closed(self):
        pipeline = GuardrailPipeline(TranscriptSynchronizer(), _classifier(side_effect=ConnectionError("groq down")))
        result = await pipeline.evaluate("hello")
        assert result.tripwire_triggered
        assert "groq down" in result.rationale

    @pytest.mark.asyncio
    async def test_clean_verdict_without_rationale_passes(self):
        pipeline = GuardrailPipeline(TranscriptSynchronizer(), _classifier({"tripwireTriggered": False, "category": "NONE"}))
        result = await pipeline.evaluate("Your bill is ready.")
        assert not result.tripwire_triggered

    @pytest.mark.asyncio
    async def test_unreadable_verdict_fails_closed(self):
        pipeline = GuardrailPipeline(TranscriptSynchronizer(), _classifier({"verdict": "ok"}))
        result = await pipeline.evaluate("hello")
        assert result.tripwire_triggered

    @pytest.mark.asyncio
    async def test_no_classifier_raises(self):
        pipeline = GuardrailPipeline(TranscriptSynchronizer())
        assert not pipeline.enabled
        with pytest.raises(GuardrailEvaluationError):
            await pipeline.evaluate("hello")

    @pytest.mark.asyncio
    async def test_review_without_dispatcher_attaches_directly(self):
        sync = TranscriptSynchronizer()
        sync.register("B", Role.ASSISTANT)
        pipeline = GuardrailPipeline(sync, _classifier(TRIPPED))
        await pipeline.review("B", "I will hurt you")
        assert sync.get("B").guardrail.tripwire_triggered

    @pytest.mark.asyncio
    async def test_review_emits_event(self):
        emitted = []
        pipeline = GuardrailPipeline(TranscriptSynchronizer(), _classifier(TRIPPED))
        pipeline.bind(emitted.append)
        await pipeline.review("B", "I will hurt you")
        assert emitted[0]["type"] == "guardrail_tripped"
        assert emitted[0]["item_id"] == "B"
        assert emitted[0]["verdict"]["category"] == "VIOLENCE"


class TestGroqClassifier:

    @pytest.mark.asyncio
    async def test_parses_json_verdict(self):
        client = _groq_client(json.dumps(TRIPPED))
        classifier = GroqModerationClassifier(GuardrailConfig(company_name="Acme"), client=client)
        verdict = await classifier.classify("  you are useless  ")

        assert verdict == TRIPPED
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "Acme" in kwargs["messages"][0]["content"]
        assert kwargs["messages"][1]["content"] == "you are useless"

    @pytest.mark.asyncio
    async def test_non_json_output_raises(self):
        classifier = GroqModerationClassifier(GuardrailConfig(), client=_groq_client("sure, looks fine"))
        with pytest.raises(GuardrailEvaluationError):
            await classifier.classify("hello")

    @pytest.mark.asyncio
    async def test_non_json_output_flags_through_pipeline(self):
        classifier = GroqModerationClassifier(GuardrailConfig(), client=_groq_client("[]"))
        pipeline = GuardrailPipeline(TranscriptSynchronizer(), classifier)
        result = await pipeline.evaluate("hello")
        assert result.tripwire_triggered
