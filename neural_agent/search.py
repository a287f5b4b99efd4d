"""Google Custom Search client for the google_search tool."""

import asyncio
import logging
from dataclasses import dataclass, field

import aiohttp

from .output import clamp_int

logger = logging.getLogger("neural_agent.search")

GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
SEARCH_TIMEOUT_SEC = 15


@dataclass
class SearchOutcome:
    ok: bool
    items: list[dict] = field(default_factory=list)
    message: str = ""


async def run_google_search(
    query: str,
    api_key: str | None,
    cx: str | None,
    count: int = 5,
    *,
    session: aiohttp.ClientSession | None = None,
    url: str = GOOGLE_SEARCH_URL,
) -> SearchOutcome:
    if not api_key or not cx:
        return SearchOutcome(ok=False, message="Google Search API key or CX missing in settings.")

    params = {
        "key": api_key,
        "cx": cx,
        "q": query,
        "num": str(clamp_int(count, min_value=1, max_value=10, fallback=5)),
        "safe": "active",
    }
    owns_session = session is None
    if owns_session:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=SEARCH_TIMEOUT_SEC))
    try:
        async with session.get(url, params=params) as response:
            if response.status != 200:
                return SearchOutcome(ok=False, message=f"Google Search API error ({response.status}).")
            data = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.warning("Google search failed: %s", e)
        return SearchOutcome(ok=False, message=f"Google Search failed: {e}")
    finally:
        if owns_session:
            await session.close()

    items = data.get("items") if isinstance(data, dict) else None
    return SearchOutcome(
        ok=True,
        items=[
            {"title": item.get("title", ""), "link": item.get("link", ""), "snippet": item.get("snippet", "")}
            for item in items or []
            if isinstance(item, dict)
        ],
    )
