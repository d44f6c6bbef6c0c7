"""
Carousel (multi-slide) generation.

Each slide runs its own fallback chain. Slides run one after another by
default; IMAGE_BATCH_CONCURRENCY > 1 allows bounded parallelism. A quota error
on any slide stops the remaining slides, since the limit is account-wide.
The caller's cancel signal aborts every in-flight slide.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import httpx

from ...core.config import IMAGE_BATCH_CONCURRENCY
from .cancellation import GenerationCancelled, raise_if_cancelled
from .classifier import FallbackPredicate
from .orchestrator import generate_image
from .types import ClassifiedError, ErrorKind, GenerationOutcome, GenerationRequest, ModelAttempt

logger = logging.getLogger("CarouselProxy.Imagen.Batch")

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class SlidePrompt:
    slide_number: int
    prompt: str


@dataclass
class SlideResult:
    slide_number: int
    outcome: Optional[GenerationOutcome] = None
    # stopped before finishing because another slide hit the quota
    skipped: bool = False


@dataclass
class BatchOutcome:
    slides: List[SlideResult] = field(default_factory=list)
    quota_error: Optional[ClassifiedError] = None

    @property
    def succeeded(self) -> List[SlideResult]:
        return [s for s in self.slides if s.outcome is not None and s.outcome.ok]

    @property
    def fallback_used(self) -> bool:
        return any(s.outcome is not None and s.outcome.fallback_used for s in self.slides)

    @property
    def error(self) -> Optional[ClassifiedError]:
        """Error for the whole batch: quota, or the first failure when no slide succeeded."""
        if self.quota_error is not None:
            return self.quota_error
        if self.succeeded:
            return None
        for slide in self.slides:
            if slide.outcome is not None and slide.outcome.error is not None:
                return slide.outcome.error
        return None

    def steps(self) -> List[Dict]:
        flattened = []
        for slide in self.slides:
            if slide.outcome is None:
                continue
            for step in slide.outcome.steps:
                flattened.append({"slideNumber": slide.slide_number, **step.to_dict()})
        return flattened


async def _watch(external: asyncio.Event, internal: asyncio.Event) -> None:
    await external.wait()
    internal.set()


async def generate_carousel_images(
    client: httpx.AsyncClient,
    slides: Sequence[SlidePrompt],
    api_key: str,
    negative_prompt: str = "",
    chain: Optional[Sequence[ModelAttempt]] = None,
    cancel_event: Optional[asyncio.Event] = None,
    concurrency: int = IMAGE_BATCH_CONCURRENCY,
    on_progress: Optional[ProgressCallback] = None,
    predicate: Optional[FallbackPredicate] = None,
    request_id: Optional[str] = None,
) -> BatchOutcome:
    raise_if_cancelled(cancel_event)

    batch = BatchOutcome()
    stop = asyncio.Event()
    watcher = asyncio.ensure_future(_watch(cancel_event, stop)) if cancel_event is not None else None
    semaphore = asyncio.Semaphore(max(1, concurrency))
    total = len(slides)
    completed = 0

    async def _run(slide: SlidePrompt) -> SlideResult:
        nonlocal completed
        async with semaphore:
            if stop.is_set():
                return SlideResult(slide.slide_number, skipped=True)
            request = GenerationRequest(prompt=slide.prompt, api_key=api_key, negative_prompt=negative_prompt)
            slide_rid = f"{request_id}-s{slide.slide_number}" if request_id else None
            try:
                outcome = await generate_image(
                    client, request, chain=chain, cancel_event=stop, predicate=predicate, request_id=slide_rid,
                )
            except GenerationCancelled:
                return SlideResult(slide.slide_number, skipped=True)

            if outcome.error is not None and outcome.error.kind == ErrorKind.QUOTA:
                if batch.quota_error is None:
                    batch.quota_error = outcome.error
                logger.warning(f"Slide {slide.slide_number} hit the quota; stopping remaining slides")
                stop.set()

            completed += 1
            if on_progress is not None and total:
                try:
                    on_progress(completed / total)
                except Exception as e:
                    logger.warning(f"Progress callback raised {type(e).__name__}: {e}")
            return SlideResult(slide.slide_number, outcome=outcome)

    try:
        batch.slides = list(await asyncio.gather(*(_run(slide) for slide in slides)))
    finally:
        if watcher is not None:
            watcher.cancel()

    if cancel_event is not None and cancel_event.is_set():
        raise GenerationCancelled()

    logger.info(
        f"Carousel batch finished: {len(batch.succeeded)}/{total} slides with images, "
        f"fallback_used={batch.fallback_used}"
    )
    return batch
