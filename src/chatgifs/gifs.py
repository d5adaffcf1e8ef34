"""GIF search provider client.

Results are only ever used as opaque message content, so decoding is lenient:
an entry without a usable ``fixed_height`` rendition is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import Invalid, Transient

logger = logging.getLogger(__name__)

DEFAULT_GIPHY_URL = "https://api.giphy.com/v1/gifs"


@dataclass(frozen=True)
class GifResult:
    id: str
    title: str
    preview_url: str
    width: int
    height: int

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "previewUrl": self.preview_url,
            "width": self.width,
            "height": self.height,
        }


def _parse_dimension(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("dimension must be numeric")
    return int(value)


def decode_gif(raw: Any) -> Optional[GifResult]:
    if not isinstance(raw, dict):
        return None
    images = raw.get("images")
    rendition = images.get("fixed_height") if isinstance(images, dict) else None
    if not isinstance(rendition, dict) or not isinstance(rendition.get("url"), str):
        return None
    try:
        width = _parse_dimension(rendition.get("width"))
        height = _parse_dimension(rendition.get("height"))
    except (TypeError, ValueError):
        return None
    gif_id = raw.get("id")
    if not isinstance(gif_id, str) or not gif_id:
        return None
    title = raw.get("title")
    return GifResult(
        id=gif_id,
        title=title if isinstance(title, str) else "",
        preview_url=rendition["url"],
        width=width,
        height=height,
    )


class GiphyClient:
    def __init__(
        self,
        api_key: str,
        *,
        session: aiohttp.ClientSession | None = None,
        base_url: str = DEFAULT_GIPHY_URL,
        limit: int = 20,
        rating: str = "g",
        timeout_s: float = 10.0,
    ) -> None:
        if not api_key:
            raise Invalid("giphy api key is required")
        self._api_key = api_key
        self._session = session
        self._owns_session = session is None
        self._base_url = base_url.rstrip("/")
        self._limit = limit
        self._rating = rating
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _get(self, endpoint: str, params: Dict[str, str]) -> Any:
        url = f"{self._base_url}/{endpoint}"
        query = {"api_key": self._api_key, **params}
        try:
            async with self._get_session().get(url, params=query, timeout=self._timeout) as resp:
                if resp.status >= 400:
                    raise Transient(f"giphy {endpoint} failed: {resp.status}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise Transient(f"giphy {endpoint} failed: {exc}") from exc
        except ValueError:
            logger.warning("giphy %s returned a non-JSON body", endpoint)
            return None

    def _decode_list(self, body: Any) -> List[GifResult]:
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            logger.warning("unexpected giphy payload shape")
            return []
        results = []
        for entry in data:
            gif = decode_gif(entry)
            if gif is None:
                logger.debug("skipping undecodable gif entry")
                continue
            results.append(gif)
        return results

    async def search(self, query: str) -> List[GifResult]:
        query = query.strip()
        if not query:
            return []
        body = await self._get("search", {"q": query, "limit": str(self._limit), "rating": self._rating})
        return self._decode_list(body)

    async def trending(self) -> List[GifResult]:
        body = await self._get("trending", {"limit": str(self._limit), "rating": self._rating})
        return self._decode_list(body)

    async def get_by_id(self, gif_id: str) -> Optional[GifResult]:
        if not gif_id or "/" in gif_id:
            raise Invalid(f"invalid gif id {gif_id!r}")
        body = await self._get(gif_id, {})
        data = body.get("data") if isinstance(body, dict) else None
        # The API answers with an object; some proxies wrap it in a list.
        if isinstance(data, list):
            data = data[0] if data else None
        return decode_gif(data)
