"""Deterministic memory extractor using simple regex rules."""

from __future__ import annotations

import re

from chat_assistant.extraction.extractor_interface import MemoryExtractorInterface
from chat_assistant.extraction.types import ExtractedMemory

MIN_CONTENT_CHARS = 10
MIN_ASSISTANT_CHARS = 100
PREVIEW_CHARS = 200

_CLAUSE_END = r"(?:\.|$|,)"
LIKE_PATTERN = re.compile(rf"i (?:like|love) (.+?){_CLAUSE_END}", re.IGNORECASE)
DISLIKE_PATTERN = re.compile(rf"i (?:hate|dislike|don't like) (.+?){_CLAUSE_END}", re.IGNORECASE)
PREFER_PATTERN = re.compile(rf"i prefer (.+?){_CLAUSE_END}", re.IGNORECASE)
PROFILE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"my name is (\w+)", re.IGNORECASE), "User name: {0}"),
    (re.compile(r"i am (\w+)", re.IGNORECASE), "User name: {0}"),
    (re.compile(rf"i work (?:at|for) (.+?){_CLAUSE_END}", re.IGNORECASE), "User works at: {0}"),
    (re.compile(rf"i live in (.+?){_CLAUSE_END}", re.IGNORECASE), "User lives in: {0}"),
    (re.compile(rf"i'm (?:a|an) (.+?){_CLAUSE_END}", re.IGNORECASE), "User is: {0}"),
    (re.compile(rf"my (.+?) is (.+?){_CLAUSE_END}", re.IGNORECASE), "User {0}: {1}"),
)
INSIGHT_TRIGGERS = ("important", "remember", "key point", "recommendation")
SENTENCE_TRIGGERS = ("important", "remember", "key", "recommend")


class RuleBasedMemoryExtractor(MemoryExtractorInterface):
    """Heuristic extractor for user profile facts and assistant insights."""

    def extract(self, content: str, role: str) -> ExtractedMemory | None:
        text = content.strip()
        if len(text) < MIN_CONTENT_CHARS:
            return None
        if role == "user":
            fact = self._extract_user_context(text)
            kind = "user_context"
        elif role == "assistant" and len(text) > MIN_ASSISTANT_CHARS:
            fact = self._extract_key_insight(text)
            kind = "assistant_insight"
        else:
            return None
        if fact is None:
            return None
        return ExtractedMemory(
            text=fact,
            role=role,
            kind=kind,
            metadata={"messageType": role, "originalContent": text[:PREVIEW_CHARS]},
        )

    def _extract_user_context(self, content: str) -> str | None:
        lowered = content.lower()

        if "i like" in lowered or "i love" in lowered:
            match = LIKE_PATTERN.search(content)
            if match and match.group(1).strip():
                return f"User likes: {match.group(1).strip()}"

        if "i hate" in lowered or "i dislike" in lowered or "i don't like" in lowered:
            match = DISLIKE_PATTERN.search(content)
            if match and match.group(1).strip():
                return f"User dislikes: {match.group(1).strip()}"

        for pattern, template in PROFILE_PATTERNS:
            match = pattern.search(content)
            if match:
                return template.format(*(group.strip() for group in match.groups()))

        if "prefer" in lowered and "i prefer not" not in lowered:
            match = PREFER_PATTERN.search(content)
            if match and match.group(1).strip():
                return f"User prefers: {match.group(1).strip()}"

        if "hobby" in lowered or "hobbies" in lowered:
            return f"User hobby: {content}"
        return None

    def _extract_key_insight(self, content: str) -> str | None:
        lowered = content.lower()
        if not any(trigger in lowered for trigger in INSIGHT_TRIGGERS):
            return None
        for sentence in content.split(". "):
            sentence_lower = sentence.lower()
            if any(trigger in sentence_lower for trigger in SENTENCE_TRIGGERS):
                return f"Assistant insight: {sentence}"
        return None
