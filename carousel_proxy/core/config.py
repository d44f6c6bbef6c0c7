import os
from dotenv import load_dotenv

load_dotenv()

APP_VERSION = os.getenv("APP_VERSION", "1.4.2")

LOG_LEVEL_FROM_ENV = os.getenv("LOG_LEVEL", "INFO").upper()

GOOGLE_API_BASE_URL = os.getenv("GOOGLE_API_BASE_URL", "https://generativelanguage.googleapis.com")
GOOGLE_API_VERSION = os.getenv("GOOGLE_API_VERSION", "v1beta")
# 服务端默认密钥：请求体未携带 apiKey 时使用
GOOGLE_API_KEY_ENV = (os.getenv("GOOGLE_API_KEY") or "").strip()

# 认证头名称（同时以 ?key= 查询参数传递）
GOOGLE_API_KEY_HEADER = "X-Goog-Api-Key"

API_TIMEOUT = int(os.getenv("API_TIMEOUT", "120"))
READ_TIMEOUT = float(os.getenv("READ_TIMEOUT", "90.0"))
MAX_CONNECTIONS = int(os.getenv("MAX_CONNECTIONS", "100"))


def _parse_model_chain(raw: str):
    """
    "model:method,model:method" -> [(model, method), ...]
    method 缺省时按模型名推断：imagen* 走 predict，其余走 generateContent
    """
    chain = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        model, _, method = entry.partition(":")
        model = model.strip()
        method = method.strip()
        if not method:
            method = "predict" if model.lower().startswith("imagen") else "generateContent"
        chain.append((model, method))
    return chain


# ===== Image Generation fallback chain =====
# 固定顺序：首个为多模态对话模型，后续为 legacy predict 模型
IMAGE_MODEL_CHAIN = _parse_model_chain(os.getenv(
    "IMAGE_MODEL_CHAIN",
    "gemini-2.5-flash-image:generateContent,"
    "imagen-4.0-generate-001:predict,"
    "imagen-4.0-ultra-generate-001:predict"
))

# ===== Default generation parameters (legacy predict models) =====
IMAGEN_ASPECT_RATIO = os.getenv("IMAGEN_ASPECT_RATIO", "1:1")
IMAGEN_SAMPLE_COUNT = int(os.getenv("IMAGEN_SAMPLE_COUNT", "1"))
IMAGEN_OUTPUT_MIME_TYPE = os.getenv("IMAGEN_OUTPUT_MIME_TYPE", "image/png")
IMAGEN_SAFETY_FILTER_LEVEL = os.getenv("IMAGEN_SAFETY_FILTER_LEVEL", "block_some")
IMAGEN_PERSON_GENERATION = os.getenv("IMAGEN_PERSON_GENERATION", "block_all")

# 消息中出现这些片段时视为"模型不可用"，允许切换到下一个模型
FALLBACK_MESSAGE_MARKERS = [
    m.strip().lower()
    for m in os.getenv(
        "FALLBACK_MESSAGE_MARKERS",
        "legacy,predict,deprecated,not found,imagen-3.0,gemini-2.5,flash-image"
    ).split(",")
    if m.strip()
]

# fileUri 下载时的分块大小（32 KiB）
FILE_DOWNLOAD_CHUNK_SIZE = int(os.getenv("FILE_DOWNLOAD_CHUNK_SIZE", f"{0x8000}"))

# ===== Carousel batch =====
# 1 = 逐张顺序生成（便于回报进度）；>1 为有界并发
IMAGE_BATCH_CONCURRENCY = max(1, int(os.getenv("IMAGE_BATCH_CONCURRENCY", "1")))
MAX_CAROUSEL_SLIDES = int(os.getenv("MAX_CAROUSEL_SLIDES", "10"))

DEFAULT_NEGATIVE_PROMPT = os.getenv(
    "DEFAULT_NEGATIVE_PROMPT",
    "cluttered, busy, low quality, blurry, watermark, signature, distorted text, meme style"
)

PROMPT_EXEMPLO = (
    "Ilustração minimalista 1080x1080 de uma banana geométrica centralizada, fundo azul-claro #A3D9FF, "
    "sombras suaves, sem pessoas, estilo clean de identidade visual."
)

# ===== CORS =====
DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
]


def _parse_allowed_origins(raw: str):
    entries = [o.strip() for o in raw.split(",") if o.strip()]
    if not entries:
        return ["*", *DEFAULT_ALLOWED_ORIGINS]
    merged = []
    for origin in [*entries, *DEFAULT_ALLOWED_ORIGINS]:
        if origin not in merged:
            merged.append(origin)
    return merged


ALLOWED_ORIGINS = _parse_allowed_origins(os.getenv("ALLOWED_ORIGINS") or os.getenv("ALLOWED_ORIGIN") or "")
CORS_ALLOW_METHODS = "POST,OPTIONS"
CORS_DEFAULT_ALLOW_HEADERS = f"Content-Type,{GOOGLE_API_KEY_HEADER}"
