import logging
import uuid
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

LOG_FORMAT = '%(asctime)s %(levelname)-8s [%(name)s:%(module)s:%(lineno)d] - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class ImagenLogAdapter(logging.LoggerAdapter):
    """
    为每条日志加上 [Imagen][<request_id>] 前缀，便于在聚合日志中追踪单次请求
    """
    def process(self, msg, kwargs):
        request_id = self.extra.get("request_id") if self.extra else None
        prefix = f"[Imagen][{request_id}]" if request_id else "[Imagen]"
        return f"{prefix} {msg}", kwargs


def get_request_logger(name: str, request_id: Optional[str] = None) -> ImagenLogAdapter:
    return ImagenLogAdapter(logging.getLogger(name), {"request_id": request_id})


def make_request_id() -> str:
    return uuid.uuid4().hex[:16]


def truncate_for_log(value: Any, max_length: int = 500) -> Any:
    if not isinstance(value, str):
        return value
    if len(value) <= max_length:
        return value
    return f"{value[:max_length]}…"


def redact_url(url: str) -> str:
    """去掉查询串（其中带有 key=），避免 API Key 进入日志"""
    try:
        parts = urlsplit(str(url))
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except ValueError:
        return "<unparseable-url>"


def format_error_for_log(error: Any) -> Dict[str, Any]:
    """ClassifiedError -> 便于日志输出的摘要字典（不含原始大体积 payload）"""
    if error is None:
        return {"message": None}
    kind = getattr(error, "kind", None)
    formatted: Dict[str, Any] = {
        "kind": getattr(kind, "value", kind),
        "model": getattr(error, "model_id", None),
        "status": getattr(error, "http_status", None),
        "message": truncate_for_log(getattr(error, "message", None) or str(error), 300),
    }
    retry_after = getattr(error, "retry_after_seconds", None)
    if retry_after is not None:
        formatted["retryAfterSeconds"] = retry_after
    payload = getattr(error, "raw_payload", None)
    if isinstance(payload, dict):
        remote = payload.get("error")
        if isinstance(remote, dict):
            if remote.get("status"):
                formatted["remoteStatus"] = remote.get("status")
            if remote.get("code"):
                formatted["remoteCode"] = remote.get("code")
        else:
            formatted["payloadKeys"] = sorted(str(k) for k in payload.keys())[:10]
    return formatted
