"""
Turn a provider failure (HTTP status + JSON body + message) into a
ClassifiedError.

Order of precedence: safety block, quota, fallback-eligible, fatal. A quota
message on a 5xx is still a quota error, since switching models does not help
when the limit is account-wide.
"""
from __future__ import annotations

import logging
import math
import re
from collections import deque
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence

from ...core.config import FALLBACK_MESSAGE_MARKERS
from .types import ClassifiedError, ErrorKind

logger = logging.getLogger("CarouselProxy.Imagen.Classifier")

SAFETY_BLOCKED_MESSAGE = "Bloqueado por segurança"
SAFETY_DEFAULT_DETAIL = "Conteúdo bloqueado por segurança."
QUOTA_MESSAGE = "Quota excedida. Aguarde alguns instantes antes de gerar novas imagens."
GENERIC_FAILURE_MESSAGE = "Falha ao gerar imagem com a Imagen API."

MODEL_HELP_GENERIC = (
    "Sua chave da Google AI não tem acesso ao modelo solicitado. Acesse o Google AI Studio, "
    "habilite o Image Generation para o projeto da chave ou gere uma nova chave com esse acesso."
)

QUOTA_MESSAGE_MARKERS = ("quota", "rate limit", "resource exhausted", "resource_exhausted")
QUOTA_STATUS_CODES = ("RESOURCE_EXHAUSTED",)

_RETRY_IN_RE = re.compile(r"retry in (\d+(?:\.\d+)?)", re.IGNORECASE)
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*s?\s*$", re.IGNORECASE)

RETRY_AFTER_FIELD_KEYS = (
    "retryAfterSeconds",
    "retry_after_seconds",
    "retryAfter",
    "retry_after",
)

# How a ClassifiedError decides fallback eligibility; swappable for tests or
# when provider wording changes.
FallbackPredicate = Callable[[Optional[int], str], bool]


def _iter_nodes(payload: Any):
    """Breadth-first walk over dicts in ``payload``; safe on cycles."""
    visited = set()
    queue = deque([payload])
    while queue:
        current = queue.popleft()
        if not isinstance(current, (dict, list)) or id(current) in visited:
            continue
        visited.add(id(current))
        if isinstance(current, list):
            queue.extend(current)
            continue
        yield current
        for key in sorted(current.keys(), key=str):
            value = current[key]
            if isinstance(value, (dict, list)):
                queue.append(value)


def _humanize_category(category: str) -> str:
    return re.sub(r"^HARM_CATEGORY_", "", category).replace("_", " ").lower()


def detect_safety_block(payload: Any) -> Optional[str]:
    """
    Human readable safety detail when ``payload`` reports a SAFETY block,
    otherwise None.
    """
    blocked = False
    messages: List[str] = []

    def _add(text: str) -> None:
        text = text.strip()
        if text and text not in messages:
            messages.append(text)

    try:
        for node in _iter_nodes(payload):
            for key in ("finishReason", "finish_reason", "blockReason", "block_reason"):
                reason = node.get(key)
                if isinstance(reason, str) and "SAFETY" in reason.upper():
                    blocked = True
            for key in ("blockReasonMessage", "finishMessage", "finish_message"):
                text = node.get(key)
                if isinstance(text, str):
                    _add(text)
            ratings = node.get("safetyRatings") or node.get("safety_ratings")
            if isinstance(ratings, list):
                for rating in ratings:
                    if not isinstance(rating, dict):
                        continue
                    category = rating.get("category")
                    is_blocked = rating.get("blocked") is True or str(rating.get("probability", "")).upper() == "VERY_LIKELY"
                    if is_blocked and isinstance(category, str):
                        blocked = True
                        _add(_humanize_category(category))
    except (TypeError, AttributeError, RecursionError) as e:
        logger.warning(f"detect_safety_block: could not scan payload: {e}")
        return None

    if not blocked:
        return None
    return " ".join(messages).strip() or SAFETY_DEFAULT_DETAIL


def _remote_error(payload: Any) -> Mapping[str, Any]:
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"]
    return {}


def payload_message(payload: Any) -> str:
    message = _remote_error(payload).get("message")
    return message if isinstance(message, str) else ""


def is_quota_error(http_status: Optional[int], payload: Any, message: Optional[str] = None) -> bool:
    if http_status == 429:
        return True
    remote = _remote_error(payload)
    remote_status = remote.get("status")
    if isinstance(remote_status, str) and remote_status.upper() in QUOTA_STATUS_CODES:
        return True
    if remote.get("code") == 429 or str(remote.get("code")) == "429":
        return True
    texts = [message or "", payload_message(payload)]
    lowered = " ".join(texts).lower()
    return any(marker in lowered for marker in QUOTA_MESSAGE_MARKERS)


def _positive_seconds(value: Any) -> Optional[float]:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return seconds


def _header_lookup(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    try:
        value = headers.get(name)
        if value is None:
            lowered = name.lower()
            for key, val in headers.items():
                if str(key).lower() == lowered:
                    return val
        return value
    except AttributeError:
        return None


def _retry_after_from_header(headers: Optional[Mapping[str, str]], now: datetime) -> Optional[float]:
    raw = _header_lookup(headers, "Retry-After")
    if raw is None:
        return None
    raw = str(raw).strip()
    seconds = _positive_seconds(raw) if raw else None
    if seconds is not None:
        return seconds
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return _positive_seconds((when - now).total_seconds())


def _parse_duration(value: Any) -> Optional[float]:
    if isinstance(value, dict):
        seconds = value.get("seconds") or 0
        nanos = value.get("nanos") or 0
        try:
            return _positive_seconds(float(seconds) + float(nanos) / 1e9)
        except (TypeError, ValueError):
            return None
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        return _positive_seconds(match.group(1)) if match else None
    return _positive_seconds(value)


def _retry_after_from_details(payload: Any) -> Optional[float]:
    details = _remote_error(payload).get("details")
    if not isinstance(details, list):
        return None
    for detail in details:
        if not isinstance(detail, dict):
            continue
        type_url = str(detail.get("@type", ""))
        if "RetryInfo" not in type_url and "retryDelay" not in detail:
            continue
        seconds = _parse_duration(detail.get("retryDelay"))
        if seconds is not None:
            return seconds
    return None


def _retry_after_from_fields(payload: Any) -> Optional[float]:
    for node in _iter_nodes(payload):
        for key in RETRY_AFTER_FIELD_KEYS:
            if key in node:
                seconds = _parse_duration(node.get(key))
                if seconds is not None:
                    return seconds
    return None


def _retry_after_from_text(texts: Iterable[str]) -> Optional[float]:
    for text in texts:
        if not isinstance(text, str):
            continue
        match = _RETRY_IN_RE.search(text)
        if match:
            seconds = _positive_seconds(match.group(1))
            if seconds is not None:
                return seconds
    return None


def resolve_retry_after(
    headers: Optional[Mapping[str, str]],
    payload: Any,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[float]:
    """
    Wait hint in seconds from, in order: the Retry-After header, a
    google.rpc.RetryInfo ``retryDelay``, a plain retry-after field, or a
    "retry in N" phrase in the message.
    """
    now = now or datetime.now(timezone.utc)
    try:
        for source in (
            lambda: _retry_after_from_header(headers, now),
            lambda: _retry_after_from_details(payload),
            lambda: _retry_after_from_fields(payload),
            lambda: _retry_after_from_text([message or "", payload_message(payload)]),
        ):
            seconds = source()
            if seconds is not None:
                return seconds
    except (TypeError, AttributeError, RecursionError) as e:
        logger.warning(f"resolve_retry_after: ignoring malformed input: {e}")
    return None


def is_retryable_with_fallback(
    http_status: Optional[int],
    message: Optional[str],
    markers: Sequence[str] = tuple(FALLBACK_MESSAGE_MARKERS),
    network_error: bool = False,
) -> bool:
    if network_error:
        return True
    if http_status in (404, 405):
        return True
    if isinstance(http_status, int) and http_status >= 500:
        return True
    lowered = (message or "").lower()
    return any(marker in lowered for marker in markers)


def default_fallback_predicate(http_status: Optional[int], message: str) -> bool:
    return is_retryable_with_fallback(http_status, message)


def model_availability_help(message: Optional[str]) -> Optional[str]:
    lowered = (message or "").lower()
    if not lowered:
        return None
    if "gemini-2.5" in lowered or "flash-image" in lowered:
        return f'{MODEL_HELP_GENERIC} Garanta que o modelo "gemini-2.5-flash-image" esteja habilitado no projeto da chave.'
    if "imagen-3.0" in lowered:
        return f'{MODEL_HELP_GENERIC} Garanta que o modelo "imagen-3.0-generate-001" esteja disponível para uso.'
    if "imagegeneration" in lowered:
        return f'{MODEL_HELP_GENERIC} Habilite o modelo legacy "imagegeneration@002" como alternativa.'
    if "not found" in lowered or "unsupported" in lowered or "does not exist" in lowered:
        return MODEL_HELP_GENERIC
    return None


def classify(
    http_status: Optional[int],
    payload: Any,
    raw_message: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
    *,
    model_id: Optional[str] = None,
    network_error: bool = False,
    predicate: Optional[FallbackPredicate] = None,
) -> ClassifiedError:
    """
    Classify a failed provider call. Never raises; anything unreadable ends up
    as a FATAL error carrying whatever message was available.
    """
    try:
        remote_message = payload_message(payload)
        message = remote_message or (raw_message or "").strip() or GENERIC_FAILURE_MESSAGE
        combined = " ".join(t for t in (raw_message or "", remote_message) if t)

        safety_detail = detect_safety_block(payload)
        if safety_detail:
            return ClassifiedError(
                kind=ErrorKind.SAFETY,
                message=SAFETY_BLOCKED_MESSAGE,
                details=safety_detail,
                http_status=http_status,
                raw_payload=payload,
                model_id=model_id,
            )

        if is_quota_error(http_status, payload, raw_message):
            return ClassifiedError(
                kind=ErrorKind.QUOTA,
                message=message,
                http_status=http_status,
                retry_after_seconds=resolve_retry_after(headers, payload, combined),
                raw_payload=payload,
                model_id=model_id,
            )

        if network_error:
            eligible = True
        else:
            eligible = (predicate or default_fallback_predicate)(http_status, combined)

        return ClassifiedError(
            kind=ErrorKind.RETRYABLE if eligible else ErrorKind.FATAL,
            message=message,
            http_status=http_status,
            retry_after_seconds=resolve_retry_after(headers, payload, combined),
            raw_payload=payload,
            model_id=model_id,
        )
    except Exception as e:
        logger.error(f"classify: unexpected failure, falling back to FATAL: {e}", exc_info=True)
        return ClassifiedError(
            kind=ErrorKind.FATAL,
            message=(raw_message or GENERIC_FAILURE_MESSAGE),
            http_status=http_status if isinstance(http_status, int) else None,
            raw_payload=payload,
            model_id=model_id,
        )
