"""
Fallback orchestrator: tries each ModelAttempt of a fixed chain in order.

    Trying(i) --image--------------------------> Success
    Trying(i) --Safety / Quota / Fatal---------> terminal error
    Trying(i) --Retryable, i+1 exists----------> Trying(i+1)   (error kept as cause)
    Trying(i) --Retryable, last tier-----------> Exhausted     (FATAL, exhausted=True)

An HTTP 200 without a usable image counts as Retryable. Attempts run one at a
time; two tiers are never called concurrently.
"""
from __future__ import annotations

import asyncio
import dataclasses
from typing import Any, Optional, Sequence

import httpx

from ...core.config import PROMPT_EXEMPLO
from ...core.logging_utils import format_error_for_log, get_request_logger, truncate_for_log
from .cancellation import raise_if_cancelled
from .classifier import SAFETY_BLOCKED_MESSAGE, FallbackPredicate, detect_safety_block
from .extractor import extract_image
from .file_resolver import resolve_file_uri
from .model_caller import ModelCallError, build_model_chain, call_model
from .types import (
    ClassifiedError,
    ErrorKind,
    FallbackStep,
    GenerationOutcome,
    GenerationRequest,
    ModelAttempt,
)

NO_IMAGE_STATUS = 502

_DEFAULT_CHAIN: Optional[Sequence[ModelAttempt]] = None


def default_chain() -> Sequence[ModelAttempt]:
    global _DEFAULT_CHAIN
    if _DEFAULT_CHAIN is None:
        _DEFAULT_CHAIN = build_model_chain()
    return _DEFAULT_CHAIN


def no_image_error(attempt: ModelAttempt, payload: Any, reason: str = "") -> ClassifiedError:
    message = f"O modelo {attempt.model_id} não retornou imagem. Exemplo de prompt funcional: {PROMPT_EXEMPLO}"
    return ClassifiedError(
        kind=ErrorKind.RETRYABLE,
        message=message,
        http_status=NO_IMAGE_STATUS,
        raw_payload=payload,
        model_id=attempt.model_id,
        details=reason or None,
    )


async def _attempt_once(
    client: httpx.AsyncClient,
    attempt: ModelAttempt,
    request: GenerationRequest,
    cancel_event: Optional[asyncio.Event],
    predicate: Optional[FallbackPredicate],
    log,
):
    """One tier. Returns (base64, file_uri, None) on success or (None, None, error)."""
    try:
        body = await call_model(client, attempt, request, cancel_event=cancel_event, predicate=predicate)
    except ModelCallError as e:
        return None, None, e.error

    safety_detail = detect_safety_block(body)
    if safety_detail:
        log.warning(f"{attempt.model_id} blocked the request for safety: {truncate_for_log(safety_detail, 200)}")
        return None, None, ClassifiedError(
            kind=ErrorKind.SAFETY,
            message=SAFETY_BLOCKED_MESSAGE,
            details=safety_detail,
            http_status=None,
            raw_payload=body,
            model_id=attempt.model_id,
        )

    extracted = extract_image(body)
    if extracted is None:
        log.warning(
            f"{attempt.model_id} answered without an image, "
            f"keys={sorted(body.keys()) if isinstance(body, dict) else type(body).__name__}"
        )
        return None, None, no_image_error(attempt, body)

    if extracted.base64:
        return extracted.base64, None, None

    log.info(f"{attempt.model_id} returned a fileUri, downloading it")
    resolved = await resolve_file_uri(client, extracted.file_uri, request.api_key, cancel_event)
    if resolved:
        return resolved, extracted.file_uri, None
    return None, None, no_image_error(attempt, body, reason=f"fileUri download failed: {extracted.file_uri}")


async def generate_image(
    client: httpx.AsyncClient,
    request: GenerationRequest,
    chain: Optional[Sequence[ModelAttempt]] = None,
    cancel_event: Optional[asyncio.Event] = None,
    predicate: Optional[FallbackPredicate] = None,
    request_id: Optional[str] = None,
) -> GenerationOutcome:
    """
    Run the fallback chain for one prompt. Errors come back inside the
    outcome; only cancellation raises (GenerationCancelled).
    """
    log = get_request_logger("CarouselProxy.Imagen.Orchestrator", request_id)
    attempts = list(chain if chain is not None else default_chain())
    steps = []
    previous: Optional[ClassifiedError] = None

    for position, attempt in enumerate(attempts):
        raise_if_cancelled(cancel_event)
        log.info(f"Trying {attempt.model_id} ({position + 1}/{len(attempts)})")

        image, file_uri, error = await _attempt_once(client, attempt, request, cancel_event, predicate, log)

        if error is None:
            steps.append(FallbackStep(attempt.model_id, attempt.sequence_index, "success"))
            log.info(f"{attempt.model_id} produced an image")
            return GenerationOutcome(image=image, model_used=attempt.model_id, file_uri=file_uri, steps=steps)

        error = dataclasses.replace(error, cause=previous, model_id=error.model_id or attempt.model_id)
        steps.append(FallbackStep(
            attempt.model_id,
            attempt.sequence_index,
            error.kind.value,
            http_status=error.http_status,
            message=truncate_for_log(error.message, 300),
        ))

        if error.is_terminal:
            log.error(f"Terminal failure on {attempt.model_id}: {format_error_for_log(error)}")
            return GenerationOutcome(error=error, steps=steps)

        if position + 1 < len(attempts):
            log.warning(
                f"{attempt.model_id} failed ({format_error_for_log(error)}); "
                f"falling back to {attempts[position + 1].model_id}"
            )
            previous = error
            continue

        error = dataclasses.replace(error, kind=ErrorKind.FATAL, exhausted=True)
        log.error(f"All {len(attempts)} models failed; last: {format_error_for_log(error)}")
        return GenerationOutcome(error=error, steps=steps)

    return GenerationOutcome(
        error=ClassifiedError(kind=ErrorKind.FATAL, message="Nenhum modelo de imagem configurado.", exhausted=True),
        steps=steps,
    )
