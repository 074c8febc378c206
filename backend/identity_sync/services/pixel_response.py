# backend/identity_sync/services/pixel_response.py
"""
Pixel endpoint response classification.

The pixel source answers with one of: nothing, a single event object, a list
of events, or something unusable (the 1x1 tracking GIF, HTML error pages,
truncated JSON). classify_pixel_response turns the raw body into a tagged
PixelPayload without touching the network.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

IMAGE_SIGNATURES = (b"GIF87a", b"GIF89a", b"\x89PNG")


class PayloadKind(str, Enum):
    EMPTY = "empty"
    SINGLE = "single"
    MANY = "many"
    MALFORMED = "malformed"


@dataclass
class PixelPayload:
    kind: PayloadKind
    events: List[Dict[str, Any]] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def is_malformed(self) -> bool:
        return self.kind == PayloadKind.MALFORMED


def _malformed(reason: str) -> PixelPayload:
    return PixelPayload(kind=PayloadKind.MALFORMED, reason=reason)


def classify_pixel_response(
    content_type: Optional[str],
    body: Union[bytes, str, None]
) -> PixelPayload:
    """
    Classify a pixel endpoint response body.

    Args:
        content_type: Response Content-Type header (may be None)
        body: Raw response body

    Returns:
        PixelPayload; MALFORMED payloads carry no events
    """
    if content_type and content_type.lower().startswith("image/"):
        return _malformed(f"image response ({content_type})")

    if body is None:
        return PixelPayload(kind=PayloadKind.EMPTY)

    if isinstance(body, bytes):
        if body.startswith(IMAGE_SIGNATURES):
            return _malformed("image bytes in response body")
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError:
            return _malformed("response body is not UTF-8")
    else:
        text = body

    if not text.strip():
        return PixelPayload(kind=PayloadKind.EMPTY)

    try:
        data = json.loads(text)
    except ValueError:
        return _malformed("invalid JSON")

    if data is None or data == [] or data == {}:
        return PixelPayload(kind=PayloadKind.EMPTY)

    if isinstance(data, list):
        events = [item for item in data if isinstance(item, dict)]
        dropped = len(data) - len(events)
        if dropped:
            logger.warning(f"⚠️ Dropped {dropped} non-object entries from pixel response")
        if not events:
            return _malformed("list without event objects")
        return PixelPayload(kind=PayloadKind.MANY, events=events)

    if isinstance(data, dict):
        if data.get("hash") or data.get("md5"):
            return PixelPayload(kind=PayloadKind.SINGLE, events=[data])
        return _malformed("object without hash")

    return _malformed(f"unexpected JSON type {type(data).__name__}")
