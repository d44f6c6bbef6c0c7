import asyncio
import logging
from typing import List

import orjson
from fastapi import APIRouter, Request, Response
from pydantic import ValidationError

from ..core.config import (
    CORS_ALLOW_METHODS,
    CORS_DEFAULT_ALLOW_HEADERS,
    GOOGLE_API_KEY_ENV,
    MAX_CAROUSEL_SLIDES,
    PROMPT_EXEMPLO,
)
from ..core.http_client import borrow_http_client
from ..core.logging_utils import get_request_logger, make_request_id, truncate_for_log
from ..models.image_generation_api_models import (
    CarouselImagesResponse,
    FallbackInfo,
    ImageGenerationRequest,
    ImageGenerationResponse,
    SlideImage,
)
from ..services.imagen import (
    GenerationCancelled,
    GenerationRequest,
    SlidePrompt,
    generate_carousel_images,
    generate_image,
)
from ..services.prompt_builder import build_negative_prompt, build_slide_prompt
from ..utils import (
    CANCELLED_STATUS,
    classified_error_body,
    classified_error_response,
    error_response,
    json_response,
)

logger = logging.getLogger("CarouselProxy.Routers.ImageGeneration")
router = APIRouter()

IMAGE_ROUTES = ("/api/imagem", "/api/imagen")
DISCONNECT_POLL_SECONDS = 1.0


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    """调用方断开连接时触发取消信号，停止后续上游调用"""
    while not cancel_event.is_set():
        try:
            if await request.is_disconnected():
                logger.info("Client disconnected, cancelling generation")
                cancel_event.set()
                return
        except RuntimeError:
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


def _slide_prompts(req: ImageGenerationRequest) -> List[SlidePrompt]:
    if req.slides:
        prompts = []
        for slide in req.slides:
            text = (slide.prompt or "").strip() or build_slide_prompt(slide.hints(), req.brand_kit)
            prompts.append(SlidePrompt(slide_number=slide.slide_number, prompt=text))
        return prompts
    return [SlidePrompt(slide_number=i + 1, prompt=req.prompt) for i in range(req.slide_count or 1)]


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or make_request_id()


def _preflight() -> Response:
    return Response(
        status_code=204,
        headers={
            "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
            "Access-Control-Allow-Headers": CORS_DEFAULT_ALLOW_HEADERS,
        },
    )


async def _generate_single(client, req: ImageGenerationRequest, api_key: str, cancel_event, request_id: str) -> Response:
    outcome = await generate_image(
        client,
        GenerationRequest(prompt=req.prompt, api_key=api_key, negative_prompt=req.negative_prompt or ""),
        cancel_event=cancel_event,
        request_id=request_id,
    )
    if not outcome.ok:
        return classified_error_response(outcome.error, request_id=request_id)
    body = ImageGenerationResponse(image=outcome.image, model_used=outcome.model_used)
    return json_response(body.model_dump(by_alias=True, exclude_none=True))


async def _generate_batch(client, req: ImageGenerationRequest, api_key: str, cancel_event, request_id: str) -> Response:
    slides = _slide_prompts(req)
    log = get_request_logger(__name__, request_id)
    log.info(f"Carousel request with {len(slides)} slide(s)")

    batch = await generate_carousel_images(
        client,
        slides,
        api_key,
        negative_prompt=req.negative_prompt or build_negative_prompt(),
        cancel_event=cancel_event,
        on_progress=lambda fraction: log.info(f"Carousel progress {fraction:.0%}"),
        request_id=request_id,
    )
    if batch.error is not None:
        return classified_error_response(batch.error, request_id=request_id)

    images = []
    for slide in batch.slides:
        outcome = slide.outcome
        if outcome is not None and outcome.ok:
            images.append(SlideImage(
                slide_number=slide.slide_number,
                model_used=outcome.model_used,
                image_base64=outcome.image,
                file_uri=outcome.file_uri,
            ))
        elif outcome is not None and outcome.error is not None:
            error_body = classified_error_body(outcome.error)
            images.append(SlideImage(
                slide_number=slide.slide_number,
                error={"message": error_body["message"], "kind": outcome.error.kind.value},
            ))
        else:
            images.append(SlideImage(slide_number=slide.slide_number, error={"message": "Geração interrompida."}))

    body = CarouselImagesResponse(
        images=images,
        fallback=FallbackInfo(used=batch.fallback_used, steps=batch.steps()),
    )
    return json_response(body.model_dump(by_alias=True))


async def _handle_generation(request: Request) -> Response:
    request_id = _request_id(request)
    log = get_request_logger(__name__, request_id)
    log.info(f"Image generation request received, origin={request.headers.get('origin')}")

    try:
        payload = orjson.loads(await request.body())
    except orjson.JSONDecodeError:
        return error_response(400, "Corpo da requisição inválido.", request_id=request_id)
    if not isinstance(payload, dict):
        return error_response(400, "Corpo da requisição inválido.", request_id=request_id)

    try:
        req = ImageGenerationRequest(**payload)
    except ValidationError as e:
        return error_response(
            400,
            "Requisição de geração de imagem inválida.",
            details=orjson.loads(e.json()),
            request_id=request_id,
        )

    api_key = req.api_key or GOOGLE_API_KEY_ENV
    if not api_key:
        return error_response(401, "A API Key é obrigatória.", request_id=request_id)

    if not req.prompt and not req.slides:
        return error_response(400, "O prompt é obrigatório.", request_id=request_id, exemplo=PROMPT_EXEMPLO)

    slide_total = len(req.slides) if req.slides else (req.slide_count or 1)
    if slide_total > MAX_CAROUSEL_SLIDES:
        return error_response(
            400,
            f"O carrossel aceita no máximo {MAX_CAROUSEL_SLIDES} slides (recebido: {slide_total}).",
            request_id=request_id,
        )

    if req.prompt:
        log.info(
            f"Prompt: {truncate_for_log(req.prompt)!r}, negativePrompt length={len(req.negative_prompt or '')}"
        )

    cancel_event = asyncio.Event()
    watcher = asyncio.ensure_future(_watch_disconnect(request, cancel_event))
    try:
        async with borrow_http_client(request.app.state) as client:
            if req.is_batch:
                return await _generate_batch(client, req, api_key, cancel_event, request_id)
            return await _generate_single(client, req, api_key, cancel_event, request_id)
    except GenerationCancelled as e:
        log.warning("Generation cancelled before completion")
        return error_response(CANCELLED_STATUS, str(e), request_id=request_id)
    finally:
        watcher.cancel()


@router.options(IMAGE_ROUTES[0], include_in_schema=False)
@router.options(IMAGE_ROUTES[1], include_in_schema=False)
async def image_generation_preflight():
    return _preflight()


# 同时保留旧路径 /api/imagen，兼容早期前端
@router.post(IMAGE_ROUTES[0], summary="Generate an image (or a carousel) with model fallback", tags=["Imagen"])
@router.post(IMAGE_ROUTES[1], include_in_schema=False)
async def create_image(request: Request):
    return await _handle_generation(request)
