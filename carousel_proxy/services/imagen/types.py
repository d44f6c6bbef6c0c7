"""
Value types shared by the image generation pipeline.

Everything here is created per request and discarded afterwards; nothing is
cached at module level.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# Provider JSON as parsed: null | bool | number | string | list | map
Document = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]


class EndpointKind(str, Enum):
    CONVERSATIONAL = "conversational"
    LEGACY_PREDICT = "legacy_predict"


class ErrorKind(str, Enum):
    SAFETY = "safety"
    QUOTA = "quota"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    api_key: str
    negative_prompt: str = ""

    def __post_init__(self):
        if not isinstance(self.prompt, str) or not self.prompt.strip():
            raise ValueError("prompt must be a non-empty string")
        if not isinstance(self.api_key, str) or not self.api_key.strip():
            raise ValueError("api_key must be a non-empty string")


@dataclass(frozen=True)
class ModelAttempt:
    model_id: str
    endpoint_kind: EndpointKind
    sequence_index: int
    url: str


@dataclass(frozen=True)
class ExtractedImage:
    """Exactly one of ``base64`` / ``file_uri`` is set."""
    base64: Optional[str] = None
    file_uri: Optional[str] = None

    def __post_init__(self):
        if bool(self.base64) == bool(self.file_uri):
            raise ValueError("ExtractedImage needs exactly one of base64 or file_uri")

    @property
    def dedup_key(self) -> str:
        if self.base64:
            return "b64:" + self.base64[:64]
        return "uri:" + str(self.file_uri)


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    http_status: Optional[int] = None
    retry_after_seconds: Optional[float] = None
    raw_payload: Any = None
    cause: Optional["ClassifiedError"] = None
    model_id: Optional[str] = None
    # human readable extra detail, e.g. the blocked safety categories
    details: Optional[str] = None
    exhausted: bool = False

    def chain(self) -> List["ClassifiedError"]:
        """Every error in the cause chain, oldest attempt first."""
        links: List[ClassifiedError] = []
        seen = set()
        current: Optional[ClassifiedError] = self
        while current is not None and id(current) not in seen:
            seen.add(id(current))
            links.append(current)
            current = current.cause
        links.reverse()
        return links

    @property
    def is_terminal(self) -> bool:
        return self.kind in (ErrorKind.SAFETY, ErrorKind.QUOTA, ErrorKind.FATAL)


@dataclass
class FallbackStep:
    model_id: str
    sequence_index: int
    outcome: str  # "success" | ErrorKind value
    http_status: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model_id,
            "index": self.sequence_index,
            "outcome": self.outcome,
            "status": self.http_status,
            "message": self.message,
        }


@dataclass
class GenerationOutcome:
    """Result of one fallback run: either ``image`` or ``error`` is set."""
    image: Optional[str] = None
    model_used: Optional[str] = None
    file_uri: Optional[str] = None
    error: Optional[ClassifiedError] = None
    steps: List[FallbackStep] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.image)

    @property
    def fallback_used(self) -> bool:
        return len(self.steps) > 1
