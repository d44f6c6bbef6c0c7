import time
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request

from ..core.logging_utils import make_request_id

logger = logging.getLogger("CarouselProxy.AccessLog")

REQUEST_ID_HEADER = "X-Request-ID"


class AccessLogMiddleware(BaseHTTPMiddleware):
    """
    为每个请求分配 request_id（优先沿用调用方的 X-Request-ID），
    写入 request.state 并回传响应头，同时输出一行访问日志
    """
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
        request_id = incoming[:64] if incoming else make_request_id()
        request.state.request_id = request_id

        response = await call_next(request)

        process_time = (time.time() - start_time) * 1000
        response.headers[REQUEST_ID_HEADER] = request_id

        # 排除健康检查
        if request.url.path not in ["/health", "/favicon.ico"]:
            forwarded = request.headers.get("X-Forwarded-For")
            if forwarded:
                real_ip = forwarded.split(",")[0].strip()
            else:
                real_ip = request.client.host if request.client else "unknown"
            logger.info(
                f"[{request_id}] {real_ip} {request.method} {request.url.path} "
                f"-> {response.status_code} ({process_time:.1f}ms)"
            )

        return response
