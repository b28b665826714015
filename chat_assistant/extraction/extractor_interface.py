"""Extractor interface for pluggable memory extraction implementations."""

from abc import ABC, abstractmethod

from chat_assistant.extraction.types import ExtractedMemory


class MemoryExtractorInterface(ABC):
    """Abstract memory extractor."""

    @abstractmethod
    def extract(self, content: str, role: str) -> ExtractedMemory | None:
        """Return the memory worth keeping from one message, if any."""
