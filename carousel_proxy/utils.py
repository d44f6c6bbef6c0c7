import math
import orjson
import logging
from typing import Any, Dict, Optional
from fastapi import Response

from .core.config import PROMPT_EXEMPLO
from .models.image_generation_api_models import ErrorInfo, ErrorResponse
from .services.imagen.classifier import (
    QUOTA_MESSAGE,
    SAFETY_BLOCKED_MESSAGE,
    model_availability_help,
)
from .services.imagen.types import ClassifiedError, ErrorKind

logger = logging.getLogger("CarouselProxy.Utils")

SAFETY_STATUS = 422
QUOTA_STATUS = 429
CANCELLED_STATUS = 499


def orjson_dumps_bytes_wrapper(data: Any) -> bytes:
    return orjson.dumps(data, option=orjson.OPT_NON_STR_KEYS)


def json_response(data: Any, status_code: int = 200, headers: Optional[Dict[str, str]] = None) -> Response:
    return Response(
        content=orjson_dumps_bytes_wrapper(data),
        status_code=status_code,
        media_type="application/json",
        headers=headers,
    )


def error_response(
    code: int,
    msg: str,
    details: Any = None,
    request_id: Optional[str] = None,
    retry_after_seconds: Optional[float] = None,
    exemplo: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Response:
    log_msg = f"Error {code}: {msg}"
    if request_id:
        log_msg = f"[Imagen][{request_id}] {log_msg}"
    logger.warning(log_msg)

    info: Dict[str, Any] = {"message": msg}
    if details is not None:
        info["details"] = details
    out_headers = dict(headers or {})
    if retry_after_seconds is not None:
        info["retry_after_seconds"] = retry_after_seconds
        out_headers["Retry-After"] = str(max(1, math.ceil(retry_after_seconds)))
    body: Dict[str, Any] = {"error": ErrorInfo(**info)}
    if exemplo:
        body["exemplo"] = exemplo
    return json_response(
        ErrorResponse(**body).model_dump(by_alias=True, exclude_unset=True),
        status_code=code,
        headers=out_headers,
    )


def _attempts_summary(error: ClassifiedError):
    return [
        {
            "model": link.model_id,
            "kind": link.kind.value,
            "status": link.http_status,
            "message": link.message,
        }
        for link in error.chain()
    ]


def _http_status_for(error: ClassifiedError) -> int:
    if error.kind == ErrorKind.SAFETY:
        return SAFETY_STATUS
    if error.kind == ErrorKind.QUOTA:
        return QUOTA_STATUS
    status = error.http_status
    if isinstance(status, int) and 400 <= status <= 599:
        return status
    return 500


def classified_error_body(error: ClassifiedError) -> Dict[str, Any]:
    """Message / details / retry hint a caller sees for ``error``."""
    if error.kind == ErrorKind.SAFETY:
        return {"message": SAFETY_BLOCKED_MESSAGE, "details": error.details}

    if error.kind == ErrorKind.QUOTA:
        message = QUOTA_MESSAGE
        if error.retry_after_seconds is not None:
            message = f"{message} Tente novamente em {math.ceil(error.retry_after_seconds)} segundos."
        return {"message": message, "details": error.message, "retryAfterSeconds": error.retry_after_seconds}

    help_message = None
    for link in reversed(error.chain()):
        help_message = model_availability_help(link.message)
        if help_message:
            break
    message = error.message
    if help_message and help_message.lower() not in message.lower():
        message = f"{help_message} (Detalhes: {error.message})"
    return {
        "message": message,
        "details": {"attempts": _attempts_summary(error), "payload": error.raw_payload},
    }


def classified_error_response(error: ClassifiedError, request_id: Optional[str] = None) -> Response:
    body = classified_error_body(error)
    exemplo = None if error.kind in (ErrorKind.SAFETY, ErrorKind.QUOTA) else PROMPT_EXEMPLO
    return error_response(
        _http_status_for(error),
        body["message"],
        details=body.get("details"),
        request_id=request_id,
        retry_after_seconds=body.get("retryAfterSeconds"),
        exemplo=exemplo,
    )
