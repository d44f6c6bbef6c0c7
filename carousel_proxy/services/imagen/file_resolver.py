import asyncio
import base64
import logging
from typing import AsyncIterator, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from ...core.config import FILE_DOWNLOAD_CHUNK_SIZE, GOOGLE_API_KEY_HEADER
from ...core.logging_utils import redact_url
from .cancellation import GenerationCancelled, run_cancellable

logger = logging.getLogger("CarouselProxy.Imagen.FileResolver")


def with_api_key(uri: str, api_key: Optional[str]) -> str:
    """Append ``key=<api_key>`` unless the URI already carries one."""
    if not api_key:
        return uri
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    if any(name == "key" for name, _ in query):
        return uri
    query.append(("key", api_key))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


async def encode_base64_stream(chunks: AsyncIterator[bytes]) -> str:
    """
    Base64-encode a byte stream piecewise. Only multiples of 3 bytes are
    encoded at a time so the output matches a one-shot encode.
    """
    encoded = []
    carry = b""
    async for chunk in chunks:
        if not chunk:
            continue
        buf = carry + chunk
        cut = len(buf) - (len(buf) % 3)
        if cut:
            encoded.append(base64.b64encode(buf[:cut]).decode("ascii"))
        carry = buf[cut:]
    if carry:
        encoded.append(base64.b64encode(carry).decode("ascii"))
    return "".join(encoded)


async def _download(client: httpx.AsyncClient, url: str, api_key: Optional[str]) -> str:
    headers = {GOOGLE_API_KEY_HEADER: api_key} if api_key else {}
    async with client.stream("GET", url, headers=headers) as response:
        if response.status_code < 200 or response.status_code >= 300:
            logger.warning(f"fileUri download returned {response.status_code} for {redact_url(url)}")
            return ""
        return await encode_base64_stream(response.aiter_bytes(FILE_DOWNLOAD_CHUNK_SIZE))


async def resolve_file_uri(
    client: httpx.AsyncClient,
    uri: str,
    api_key: Optional[str],
    cancel_event: Optional[asyncio.Event] = None,
) -> str:
    """
    Download ``uri`` and return its bytes as base64. Any failure yields "" so a
    broken download only costs this one image.
    """
    if not uri or not isinstance(uri, str):
        return ""
    url = with_api_key(uri, api_key)
    try:
        return await run_cancellable(_download(client, url, api_key), cancel_event)
    except GenerationCancelled:
        raise
    except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError, ValueError) as e:
        logger.error(f"Failed to download fileUri {redact_url(uri)}: {type(e).__name__}: {e}")
        return ""
