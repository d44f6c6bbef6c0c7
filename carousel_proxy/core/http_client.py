"""
HTTP 客户端管理模块
应用生命周期内复用同一个 httpx.AsyncClient（挂在 app.state 上）；
无共享客户端时（例如 serverless 冷启动路径）临时创建并在用完后关闭。
客户端本身不保存任何 API Key，密钥随每次请求显式传入。
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from .config import API_TIMEOUT, READ_TIMEOUT, MAX_CONNECTIONS

logger = logging.getLogger("CarouselProxy.Core.HTTPClient")


def build_http_client() -> httpx.AsyncClient:
    """
    配置说明：
    - timeout: 连接/读取超时；超时按网络错误处理（可切换到下一个模型）
    - limits: 连接池限制
    - http2: 启用 HTTP/2 多路复用
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(API_TIMEOUT, read=READ_TIMEOUT),
        limits=httpx.Limits(
            max_connections=MAX_CONNECTIONS,
            max_keepalive_connections=20,
            keepalive_expiry=60.0,
        ),
        http2=True,
        follow_redirects=True,
        trust_env=True,
    )


def shared_client_from(app_state) -> Optional[httpx.AsyncClient]:
    client = getattr(app_state, "http_client", None)
    if isinstance(client, httpx.AsyncClient) and not client.is_closed:
        return client
    return None


@asynccontextmanager
async def borrow_http_client(app_state) -> AsyncIterator[httpx.AsyncClient]:
    shared = shared_client_from(app_state)
    if shared is not None:
        yield shared
        return

    logger.info("No shared HTTP client on app.state, using a short-lived one")
    client = build_http_client()
    try:
        yield client
    finally:
        await client.aclose()
