"""Typed memory extraction outputs independent of storage."""

from dataclasses import dataclass, field


@dataclass(slots=True)
class ExtractedMemory:
    """Short fact worth remembering across sessions."""

    text: str
    role: str
    kind: str
    metadata: dict[str, object] = field(default_factory=dict)
