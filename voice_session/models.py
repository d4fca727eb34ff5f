"""Shared value types: roles, transcript entries, guardrail verdicts."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        """Accept 'user' / 'USER' / Role.USER; raise ValueError otherwise."""
        if isinstance(value, Role):
            return value
        if isinstance(value, str):
            return cls(value.strip().lower())
        raise ValueError(f"not a role: {value!r}")


class Lifecycle(Enum):
    PENDING = 0
    STREAMING = 1
    DONE = 2

    def can_advance_to(self, other: "Lifecycle") -> bool:
        return other.value > self.value


class GuardrailCategory(str, Enum):
    OFFENSIVE = "OFFENSIVE"
    OFF_BRAND = "OFF_BRAND"
    VIOLENCE = "VIOLENCE"
    NONE = "NONE"

    @classmethod
    def parse(cls, value: Any) -> "GuardrailCategory":
        if isinstance(value, GuardrailCategory):
            return value
        if value is None:
            return cls.NONE
        # "OffBrand", "off-brand", "off_brand" → OFF_BRAND
        norm = re.sub(r"(?<=[a-z])(?=[A-Z])", "_", str(value).strip())
        norm = re.sub(r"[^A-Za-z]+", "_", norm).strip("_").upper()
        return cls(norm)


@dataclass(frozen=True)
class GuardrailResult:
    category: GuardrailCategory
    rationale: str
    evidence_text: Optional[str] = None
    tripwire_triggered: bool = False

    @classmethod
    def from_verdict(cls, verdict: dict) -> "GuardrailResult":
        """Build from the collaborator contract {tripwireTriggered, category, rationale}.

        Raises ValueError / TypeError when the verdict cannot be interpreted.
        """
        if not isinstance(verdict, dict):
            raise TypeError(f"verdict must be an object, got {type(verdict).__name__}")
        category = GuardrailCategory.parse(verdict.get("category"))
        tripped = verdict.get("tripwireTriggered", verdict.get("tripwire_triggered"))
        if tripped is None:
            tripped = category is not GuardrailCategory.NONE
        rationale = verdict.get("rationale")
        if rationale is None and not tripped:
            rationale = ""
        if not isinstance(rationale, str):
            raise ValueError("verdict.rationale must be a string")
        evidence = verdict.get("evidenceText", verdict.get("evidence_text"))
        return cls(
            category=category,
            rationale=rationale,
            evidence_text=evidence if isinstance(evidence, str) else None,
            tripwire_triggered=bool(tripped),
        )

    def to_dict(self) -> dict:
        return {
            "tripwireTriggered": self.tripwire_triggered,
            "category": self.category.value,
            "rationale": self.rationale,
            "evidenceText": self.evidence_text,
        }


@dataclass
class TranscriptEntry:
    """One logical conversation message, keyed by item_id."""
    item_id: str
    role: Role
    text: str
    lifecycle: Lifecycle = Lifecycle.PENDING
    order: int = 0
    guardrail: Optional[GuardrailResult] = field(default=None, repr=False)
    # Client-injected turns such as the greeting; never mirrored to the store
    hidden: bool = False

    def to_dict(self) -> dict:
        return {
            "itemId": self.item_id,
            "role": self.role.value,
            "text": self.text,
            "lifecycle": self.lifecycle.name,
            "order": self.order,
            "hidden": self.hidden,
            "guardrail": self.guardrail.to_dict() if self.guardrail else None,
        }
