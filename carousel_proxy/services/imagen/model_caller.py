"""
One HTTP call to one model of the fallback chain.

Two request shapes are supported:
  - conversational models (``:generateContent``): prompt as a user turn,
    negative prompt appended to the text;
  - legacy Imagen models (``:predict``): ``instances``/``parameters`` body with
    both camelCase and snake_case parameter keys, since provider versions
    disagree on which one they read.

The API key is sent both as ``?key=`` and as the X-Goog-Api-Key header.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
import orjson

from ...core.config import (
    GOOGLE_API_BASE_URL,
    GOOGLE_API_KEY_HEADER,
    GOOGLE_API_VERSION,
    IMAGE_MODEL_CHAIN,
    IMAGEN_ASPECT_RATIO,
    IMAGEN_OUTPUT_MIME_TYPE,
    IMAGEN_PERSON_GENERATION,
    IMAGEN_SAFETY_FILTER_LEVEL,
    IMAGEN_SAMPLE_COUNT,
)
from ...core.logging_utils import redact_url
from .cancellation import run_cancellable
from .classifier import FallbackPredicate, classify
from .types import ClassifiedError, EndpointKind, GenerationRequest, ModelAttempt

logger = logging.getLogger("CarouselProxy.Imagen.ModelCaller")

NETWORK_ERROR_MESSAGE = (
    "Não foi possível se conectar à Imagen API. Verifique sua conexão com a internet, "
    "a chave de API e tente novamente."
)

_METHOD_TO_KIND = {
    "generatecontent": EndpointKind.CONVERSATIONAL,
    "predict": EndpointKind.LEGACY_PREDICT,
}


class ModelCallError(Exception):
    """Carries the classification of a failed model call to the orchestrator."""

    def __init__(self, error: ClassifiedError):
        super().__init__(error.message)
        self.error = error


def build_model_url(model_id: str, method: str, base_url: str = GOOGLE_API_BASE_URL, api_version: str = GOOGLE_API_VERSION) -> str:
    return f"{base_url.rstrip('/')}/{api_version.strip('/')}/models/{model_id}:{method}"


def build_model_chain(entries: Sequence[Tuple[str, str]] = tuple(IMAGE_MODEL_CHAIN)) -> Tuple[ModelAttempt, ...]:
    chain: List[ModelAttempt] = []
    for model_id, method in entries:
        kind = _METHOD_TO_KIND.get(method.lower())
        if kind is None:
            raise ValueError(f"Unsupported endpoint method '{method}' for model '{model_id}'")
        chain.append(ModelAttempt(
            model_id=model_id,
            endpoint_kind=kind,
            sequence_index=len(chain),
            url=build_model_url(model_id, method),
        ))
    if not chain:
        raise ValueError("IMAGE_MODEL_CHAIN is empty")
    return tuple(chain)


def build_prompt_text(prompt: str, negative_prompt: Optional[str]) -> str:
    if not negative_prompt:
        return prompt
    return f"{prompt}\n\nRestrições: {negative_prompt}"


def build_conversational_payload(request: GenerationRequest) -> Dict[str, Any]:
    return {
        "contents": [
            {
                "role": "user",
                "parts": [{"text": build_prompt_text(request.prompt, request.negative_prompt)}],
            }
        ]
    }


def build_legacy_predict_payload(
    request: GenerationRequest,
    *,
    sample_count: int = IMAGEN_SAMPLE_COUNT,
    aspect_ratio: str = IMAGEN_ASPECT_RATIO,
    output_mime_type: str = IMAGEN_OUTPUT_MIME_TYPE,
    safety_filter_level: str = IMAGEN_SAFETY_FILTER_LEVEL,
    person_generation: str = IMAGEN_PERSON_GENERATION,
) -> Dict[str, Any]:
    instance: Dict[str, Any] = {"prompt": {"text": request.prompt}}
    if request.negative_prompt:
        instance["negativePrompt"] = {"text": request.negative_prompt}
        instance["negative_prompt"] = {"text": request.negative_prompt}

    return {
        "instances": [instance],
        "parameters": {
            "sampleCount": sample_count,
            "sample_count": sample_count,
            "aspectRatio": aspect_ratio,
            "aspect_ratio": aspect_ratio,
            "outputMimeType": output_mime_type,
            "output_mime_type": output_mime_type,
            "safetyFilterLevel": safety_filter_level,
            "safety_filter_level": safety_filter_level,
            "personGeneration": person_generation,
            "person_generation": person_generation,
        },
    }


def build_payload(attempt: ModelAttempt, request: GenerationRequest) -> Dict[str, Any]:
    if attempt.endpoint_kind == EndpointKind.CONVERSATIONAL:
        return build_conversational_payload(request)
    return build_legacy_predict_payload(request)


def build_auth_headers(api_key: str) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Accept": "application/json",
        GOOGLE_API_KEY_HEADER: api_key,
    }


def parse_json_body(content: bytes) -> Any:
    """Provider bodies are untrusted; an unparseable body is an empty object."""
    if not content:
        return {}
    try:
        return orjson.loads(content)
    except orjson.JSONDecodeError:
        return {}


async def call_model(
    client: httpx.AsyncClient,
    attempt: ModelAttempt,
    request: GenerationRequest,
    cancel_event: Optional[asyncio.Event] = None,
    predicate: Optional[FallbackPredicate] = None,
) -> Any:
    """
    POST the request to ``attempt``'s endpoint and return the parsed JSON body.
    Raises ModelCallError on non-2xx or request failure, GenerationCancelled
    when ``cancel_event`` fires.
    """
    payload = build_payload(attempt, request)
    logger.info(
        f"Calling {attempt.model_id} (#{attempt.sequence_index}, {attempt.endpoint_kind.value}) "
        f"at {redact_url(attempt.url)}, payload keys={sorted(payload.keys())}"
    )

    try:
        response = await run_cancellable(
            client.post(
                attempt.url,
                params={"key": request.api_key},
                headers=build_auth_headers(request.api_key),
                content=orjson.dumps(payload),
            ),
            cancel_event,
        )
    except httpx.RequestError as e:
        # any request-level failure (timeout, bad encoding, redirect loop) may succeed on another model
        logger.warning(f"{attempt.model_id}: request error {type(e).__name__}: {e}")
        raise ModelCallError(classify(
            None,
            {},
            f"{NETWORK_ERROR_MESSAGE} ({type(e).__name__})",
            model_id=attempt.model_id,
            network_error=True,
            predicate=predicate,
        )) from e

    body = parse_json_body(response.content)

    if response.status_code < 200 or response.status_code >= 300:
        fallback_message = f"Falha na chamada da API ({response.status_code})."
        error = classify(
            response.status_code,
            body,
            fallback_message,
            response.headers,
            model_id=attempt.model_id,
            predicate=predicate,
        )
        logger.warning(
            f"{attempt.model_id}: non-2xx {response.status_code}, classified as {error.kind.value}: "
            f"{error.message[:300]}"
        )
        raise ModelCallError(error)

    logger.info(
        f"{attempt.model_id}: {response.status_code} OK, "
        f"keys={sorted(body.keys()) if isinstance(body, dict) else type(body).__name__}"
    )
    return body
