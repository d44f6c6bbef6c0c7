"""
Locate an image inside an arbitrary provider response.

Different model generations put the picture in very different places
(``candidates[].content.parts[].inlineData``, ``predictions[].bytesBase64Encoded``,
``data[].b64_json``, ``fileData.fileUri`` ...). Rather than hard-coding every
path, the document is walked breadth-first and each node is checked against
the alias lists below, in order. The first match wins.

Key iteration never depends on the order keys appear in the JSON: known
container keys are visited in ``CONTAINER_KEYS`` order, everything else in
sorted order. None of the functions here raise on odd input.
"""
from __future__ import annotations

import logging
import re
from collections import deque
from typing import Any, Iterator, List, Optional

from .types import Document, ExtractedImage

logger = logging.getLogger("CarouselProxy.Imagen.Extractor")

INLINE_CONTAINER_KEYS = ("inlineData", "inline_data")

INLINE_PAYLOAD_KEYS = (
    "data",
    "base64",
    "b64",
    "b64_json",
    "imageBase64",
    "image_base64",
    "bytesBase64Encoded",
    "bytes_base64_encoded",
)

DIRECT_BASE64_KEYS = (
    "bytesBase64Encoded",
    "bytes_base64_encoded",
    "base64Image",
    "base64_image",
    "imageBase64",
    "image_base64",
    "b64_json",
)

# bare keys, only trusted next to a mime type or when long enough to be a picture
BARE_BASE64_KEYS = ("base64", "b64", "data")

FILE_CONTAINER_KEYS = ("fileData", "file_data", "media", "mediaData", "media_data")

FILE_URI_KEYS = ("fileUri", "file_uri", "downloadUri", "download_uri")

# generic link keys, only trusted inside a file container or next to a mime type
GENERIC_URI_KEYS = ("uri", "url", "source")

MIME_TYPE_KEYS = ("mimeType", "mime_type")

CONTAINER_KEYS = (
    "candidates",
    "content",
    "contents",
    "parts",
    "predictions",
    "generatedImages",
    "generated_images",
    "images",
    "image",
    "data",
    "artifacts",
    "output",
    "outputs",
    "items",
    "files",
    "result",
    "response",
)

_DATA_URI_RE = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/_-]+={0,2}$")
_MIN_BASE64_LENGTH = 4
# shortest bare-key payload accepted without a mime type
_MIN_BARE_BASE64_LENGTH = 64


def _strip_data_uri(value: str) -> str:
    return _DATA_URI_RE.sub("", value.strip(), count=1)


def _looks_like_base64(value: Any, min_length: int = _MIN_BASE64_LENGTH) -> bool:
    if not isinstance(value, str):
        return False
    candidate = _strip_data_uri(value)
    if len(candidate) < min_length:
        return False
    return bool(_BASE64_RE.match(candidate.replace("\n", "").replace("\r", "")))


def _pick_inline(node: dict) -> Optional[str]:
    for container_key in INLINE_CONTAINER_KEYS:
        inline = node.get(container_key)
        if isinstance(inline, str) and inline.strip():
            return _strip_data_uri(inline)
        if not isinstance(inline, dict):
            continue
        for key in INLINE_PAYLOAD_KEYS:
            value = inline.get(key)
            if isinstance(value, str) and value.strip():
                return _strip_data_uri(value)
    return None


def _pick_direct(node: dict) -> Optional[str]:
    for key in DIRECT_BASE64_KEYS:
        value = node.get(key)
        if _looks_like_base64(value):
            return _strip_data_uri(value)
    has_mime = any(isinstance(node.get(k), str) for k in MIME_TYPE_KEYS)
    min_length = _MIN_BASE64_LENGTH if has_mime else _MIN_BARE_BASE64_LENGTH
    for key in BARE_BASE64_KEYS:
        value = node.get(key)
        if _looks_like_base64(value, min_length):
            return _strip_data_uri(value)
    return None


def _pick_file_uri_from(obj: dict, include_generic: bool) -> Optional[str]:
    keys = FILE_URI_KEYS + GENERIC_URI_KEYS if include_generic else FILE_URI_KEYS
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip().lower().startswith("http"):
            return value.strip()
    return None


def _pick_file_uri(node: dict) -> Optional[str]:
    for container_key in FILE_CONTAINER_KEYS:
        container = node.get(container_key)
        if isinstance(container, dict):
            uri = _pick_file_uri_from(container, include_generic=True)
            if uri:
                return uri
    has_mime = any(isinstance(node.get(k), str) for k in MIME_TYPE_KEYS)
    return _pick_file_uri_from(node, include_generic=has_mime)


def _match_node(node: dict) -> Optional[ExtractedImage]:
    inline = _pick_inline(node)
    if inline:
        return ExtractedImage(base64=inline)
    direct = _pick_direct(node)
    if direct:
        return ExtractedImage(base64=direct)
    uri = _pick_file_uri(node)
    if uri:
        return ExtractedImage(file_uri=uri)
    return None


def _child_keys(node: dict) -> List[Any]:
    known = [k for k in CONTAINER_KEYS if k in node]
    rest = sorted((k for k in node.keys() if k not in CONTAINER_KEYS), key=str)
    return known + rest


def _iter_matches(document: Document) -> Iterator[ExtractedImage]:
    if document is None:
        return
    visited = set()
    queue = deque([document])
    while queue:
        current = queue.popleft()
        if not isinstance(current, (dict, list)):
            continue
        if id(current) in visited:
            continue
        visited.add(id(current))

        if isinstance(current, list):
            queue.extend(item for item in current if isinstance(item, (dict, list)))
            continue

        match = _match_node(current)
        if match is not None:
            yield match
            # children of a matched node only repeat the same image
            continue

        for key in _child_keys(current):
            value = current.get(key)
            if isinstance(value, (dict, list)):
                queue.append(value)


def extract_image(document: Document) -> Optional[ExtractedImage]:
    """
    First inline base64 image or downloadable file reference in ``document``.
    Returns None when nothing is found; that is a normal outcome.
    """
    try:
        for match in _iter_matches(document):
            return match
    except (TypeError, AttributeError, RecursionError) as e:
        logger.warning(f"extract_image: unexpected document shape ({type(document).__name__}): {e}")
    return None


def extract_all_images(document: Document) -> List[ExtractedImage]:
    """Every image found in ``document``, de-duplicated, in traversal order."""
    results: List[ExtractedImage] = []
    seen = set()
    try:
        for match in _iter_matches(document):
            key = match.dedup_key
            if key in seen:
                continue
            seen.add(key)
            results.append(match)
    except (TypeError, AttributeError, RecursionError) as e:
        logger.warning(f"extract_all_images: unexpected document shape ({type(document).__name__}): {e}")
    return results
