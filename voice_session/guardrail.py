"""
guardrail.py — output moderation
=================================
Completed assistant messages are reviewed by a moderation classifier.  A
tripped verdict travels back through the event stream as a
`guardrail_tripped` event and is attached to the most recently created
assistant entry.  The entry's text is never rewritten; the verdict is
metadata for presentation and filtering.

Evaluation is fail-closed: classifier errors, timeouts and unreadable
verdicts all produce a tripped result.
"""

import asyncio
import json
import logging
import os
from typing import Callable, Optional, Protocol

from groq import AsyncGroq

from voice_session.config import GuardrailConfig
from voice_session.errors import GuardrailEvaluationError
from voice_session.models import GuardrailCategory, GuardrailResult, TranscriptEntry
from voice_session.transcript import TranscriptSynchronizer

log = logging.getLogger("voice_session.guardrail")


class GuardrailClassifier(Protocol):
    async def classify(self, text: str) -> dict:
        """Return {"tripwireTriggered": bool, "category": str, "rationale": str}."""
        ...


class GroqModerationClassifier:
    """Single Groq chat completion that labels one assistant message."""

    def __init__(self, config: GuardrailConfig, client: Optional[AsyncGroq] = None) -> None:
        self._config = config
        self._client = client

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            self._client = AsyncGroq(api_key=os.environ["GROQ_API_KEY"])
        return self._client

    async def classify(self, text: str) -> dict:
        response = await self._get_client().chat.completions.create(
            model=self._config.model,
            messages=[
                {"role": "system", "content": self._config.prompt.format(company_name=self._config.company_name)},
                {"role": "user", "content": text.strip()},
            ],
            temperature=0.0,
            max_tokens=200,
            response_format={"type": "json_object"},
            stream=False,
        )
        raw = (response.choices[0].message.content or "").strip()
        try:
            verdict = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GuardrailEvaluationError(f"classifier returned non-JSON output: {raw[:80]!r}") from exc
        if not isinstance(verdict, dict):
            raise GuardrailEvaluationError(f"classifier returned {type(verdict).__name__}, expected object")
        return verdict


class GuardrailPipeline:

    def __init__(
        self,
        synchronizer: TranscriptSynchronizer,
        classifier: Optional[GuardrailClassifier] = None,
        *,
        timeout_ms: int = 1500,
    ) -> None:
        self._synchronizer = synchronizer
        self._classifier = classifier
        self.timeout_ms = timeout_ms
        self._emit: Optional[Callable[[dict], None]] = None
        self._reviews: set[asyncio.Task] = set()

    def bind(self, emit: Callable[[dict], None]) -> None:
        """Route tripped verdicts through the event stream entry point."""
        self._emit = emit

    @property
    def enabled(self) -> bool:
        return self._classifier is not None

    # -----------------------------------------------------------------------
    # Evaluation
    # -----------------------------------------------------------------------

    async def evaluate(self, text: str) -> GuardrailResult:
        if not self.enabled:
            raise GuardrailEvaluationError("no guardrail classifier configured")
        try:
            verdict = await asyncio.wait_for(
                self._classifier.classify(text),
                timeout=self.timeout_ms / 1000.0,
            )
            result = GuardrailResult.from_verdict(verdict)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            log.warning("event=guardrail_timeout timeout_ms=%d text_len=%d fallback=flag", self.timeout_ms, len(text))
            return _fail_closed(text, f"guardrail evaluation timed out after {self.timeout_ms} ms")
        except Exception as exc:
            log.warning("event=guardrail_error error=%s text_len=%d fallback=flag", exc, len(text))
            return _fail_closed(text, f"guardrail evaluation failed: {exc}")

        if result.tripwire_triggered and result.evidence_text is None:
            result = GuardrailResult(
                category=result.category,
                rationale=result.rationale,
                evidence_text=text,
                tripwire_triggered=True,
            )
        log.info(
            "event=guardrail_result tripped=%s category=%s text_len=%d",
            result.tripwire_triggered, result.category.value, len(text),
        )
        return result

    def schedule_review(self, item_id: str, text: str) -> None:
        """Fire-and-forget review of one completed assistant message."""
        if not self.enabled:
            return
        task = asyncio.get_running_loop().create_task(self.review(item_id, text), name=f"guardrail_{item_id}")
        self._reviews.add(task)
        task.add_done_callback(self._reviews.discard)

    async def review(self, item_id: str, text: str) -> GuardrailResult:
        result = await self.evaluate(text)
        if result.tripwire_triggered:
            event = {"type": "guardrail_tripped", "item_id": item_id, "verdict": result.to_dict()}
            if self._emit is not None:
                self._emit(event)
            else:
                self.on_tripped(event["verdict"])
        return result

    # -----------------------------------------------------------------------
    # Verdict attachment
    # -----------------------------------------------------------------------

    def on_tripped(self, verdict: dict) -> Optional[TranscriptEntry]:
        """Attach a tripped verdict to the most recently created assistant entry."""
        try:
            result = GuardrailResult.from_verdict(verdict)
        except (TypeError, ValueError) as exc:
            log.warning("event=guardrail_verdict_invalid error=%s", exc)
            return None
        if not result.tripwire_triggered:
            log.debug("event=guardrail_verdict_ignored reason=not_tripped")
            return None

        entry = self._synchronizer.attach_guardrail(result)
        if entry is None:
            log.warning("event=guardrail_verdict_dropped reason=no_assistant_message category=%s", result.category.value)
            return None
        log.info(
            "event=guardrail_attached item_id=%s category=%s rationale=%.80s",
            entry.item_id, result.category.value, result.rationale,
        )
        return entry

    async def aclose(self) -> None:
        for task in list(self._reviews):
            task.cancel()
        if self._reviews:
            await asyncio.gather(*self._reviews, return_exceptions=True)
        self._reviews.clear()


def _fail_closed(text: str, rationale: str) -> GuardrailResult:
    return GuardrailResult(
        category=GuardrailCategory.NONE,
        rationale=rationale,
        evidence_text=text,
        tripwire_triggered=True,
    )
