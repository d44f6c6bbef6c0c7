import logging
import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from contextlib import asynccontextmanager
from typing import Optional

from .core.config import (
    APP_VERSION, API_TIMEOUT, READ_TIMEOUT, MAX_CONNECTIONS,
    LOG_LEVEL_FROM_ENV,
    ALLOWED_ORIGINS,
    GOOGLE_API_KEY_HEADER,
    IMAGE_MODEL_CHAIN,
)
from .core.http_client import build_http_client
from .core.logging_utils import LOG_FORMAT, LOG_DATE_FORMAT
from .api import image_generation as image_generation_router
from .middleware import AccessLogMiddleware, REQUEST_ID_HEADER

numeric_log_level = getattr(logging, LOG_LEVEL_FROM_ENV.upper(), logging.INFO)

# 配置根日志记录器
root_logger = logging.getLogger()
root_logger.setLevel(numeric_log_level)
if not any(getattr(h, "_carousel_console", False) for h in root_logger.handlers):
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    console_handler._carousel_console = True
    root_logger.addHandler(console_handler)

logger = logging.getLogger("CarouselProxy.Main")

for lib_logger_name in ["httpx", "httpcore", "hpack", "uvicorn.access", "watchfiles"]:
    logging.getLogger(lib_logger_name).setLevel(logging.WARNING)
logging.getLogger("uvicorn.error").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    logger.info("Lifespan: 应用启动，开始初始化...")

    client_local: Optional[httpx.AsyncClient] = None
    try:
        client_local = build_http_client()
        app_instance.state.http_client = client_local
        logger.info(f"Lifespan: HTTP客户端初始化成功。Timeout Connect: {API_TIMEOUT}s, Read Timeout: {READ_TIMEOUT}s, Max Connections: {MAX_CONNECTIONS}")
        logger.info(
            "Lifespan: 模型回退链: "
            + " -> ".join(f"{model}:{method}" for model, method in IMAGE_MODEL_CHAIN)
        )
    except Exception as e:
        logger.error(f"Lifespan: HTTP客户端初始化过程中发生错误: {e}", exc_info=True)
        app_instance.state.http_client = None

    yield

    logger.info("Lifespan: 应用关闭，开始关闭HTTP客户端...")
    client_to_close = getattr(app_instance.state, "http_client", None)
    if isinstance(client_to_close, httpx.AsyncClient) and not client_to_close.is_closed:
        try:
            await client_to_close.aclose()
            logger.info("Lifespan: HTTP客户端成功关闭。")
        except Exception as e:
            logger.error(f"Lifespan: 关闭HTTP客户端时发生错误: {e}", exc_info=True)
    else:
        logger.warning("Lifespan: HTTP客户端未找到或已关闭，无需处理。")

    if hasattr(app_instance.state, "http_client"):
        delattr(app_instance.state, "http_client")

    logger.info("Lifespan: 应用关闭流程完成。")


app = FastAPI(
    title="Carousel Image Proxy",
    description=f"Gemini / Imagen 图像生成代理，版本: {APP_VERSION}",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# 访问日志中间件（分配 request_id）
app.add_middleware(AccessLogMiddleware)

# 中间件后添加先执行：CORS 在访问日志之前处理预检请求
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["Content-Type", GOOGLE_API_KEY_HEADER, REQUEST_ID_HEADER],
    expose_headers=[REQUEST_ID_HEADER],
)

# Base64 图像响应体积较大，压缩收益明显
app.add_middleware(GZipMiddleware, minimum_size=500)
logger.info(f"FastAPI Carousel Image Proxy v{APP_VERSION} 初始化完成，CORS 允许来源: {ALLOWED_ORIGINS}")

app.include_router(image_generation_router.router)
logger.info("图像生成路由已加载到路径 /api/imagem (兼容 /api/imagen)")


@app.get("/", status_code=200, include_in_schema=False, tags=["Utilities"])
async def root():
    """根路由，确认服务正常运行"""
    return {
        "message": "Carousel Image Proxy is running",
        "version": APP_VERSION,
        "status": "ok",
        "endpoints": {
            "imagem": "/api/imagem",
            "health": "/health",
            "docs": "/docs",
        }
    }


@app.get("/health", status_code=200, include_in_schema=False, tags=["Utilities"])
async def health_check(request: Request):
    client_from_state = getattr(request.app.state, "http_client", None)
    client_status = "ok"
    detail_message = "HTTP client initialized and seems operational."

    if client_from_state is None:
        client_status = "error"
        detail_message = "HTTP client not initialized in app.state."
    elif not isinstance(client_from_state, httpx.AsyncClient):
        client_status = "error"
        detail_message = f"Unexpected object type in app.state.http_client: {type(client_from_state)}"
    elif client_from_state.is_closed:
        client_status = "warning"
        detail_message = "HTTP client in app.state is closed."

    return {"status": client_status, "detail": detail_message, "app_version": APP_VERSION}
