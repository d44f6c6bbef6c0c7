import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

logger = logging.getLogger("CarouselProxy.Imagen.Cancellation")

T = TypeVar("T")


class GenerationCancelled(Exception):
    """The caller's cancel signal fired; never classified, never retried."""

    def __init__(self, message: str = "Geração de imagens cancelada."):
        super().__init__(message)


def raise_if_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise GenerationCancelled()


async def run_cancellable(awaitable: Awaitable[T], cancel_event: Optional[asyncio.Event]) -> T:
    """
    Await ``awaitable`` unless ``cancel_event`` fires first, in which case the
    in-flight work is cancelled and GenerationCancelled is raised.
    """
    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise GenerationCancelled()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        waiter.cancel()
        raise

    if work.done():
        waiter.cancel()
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Cancelled work finished with {type(e).__name__}: {e}")
    raise GenerationCancelled()
