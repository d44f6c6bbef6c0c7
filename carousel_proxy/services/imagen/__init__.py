"""
Image generation pipeline: extraction, classification, model calls,
fallback orchestration, fileUri resolution and carousel batches.
"""

from .batch import BatchOutcome, SlidePrompt, SlideResult, generate_carousel_images
from .cancellation import GenerationCancelled
from .classifier import classify, detect_safety_block, is_quota_error, is_retryable_with_fallback, resolve_retry_after
from .extractor import extract_all_images, extract_image
from .file_resolver import resolve_file_uri
from .model_caller import ModelCallError, build_model_chain, call_model
from .orchestrator import generate_image
from .types import (
    ClassifiedError,
    EndpointKind,
    ErrorKind,
    ExtractedImage,
    GenerationOutcome,
    GenerationRequest,
    ModelAttempt,
)

__all__ = [
    "BatchOutcome",
    "SlidePrompt",
    "SlideResult",
    "generate_carousel_images",
    "GenerationCancelled",
    "classify",
    "detect_safety_block",
    "is_quota_error",
    "is_retryable_with_fallback",
    "resolve_retry_after",
    "extract_all_images",
    "extract_image",
    "resolve_file_uri",
    "ModelCallError",
    "build_model_chain",
    "call_model",
    "generate_image",
    "ClassifiedError",
    "EndpointKind",
    "ErrorKind",
    "ExtractedImage",
    "GenerationOutcome",
    "GenerationRequest",
    "ModelAttempt",
]
