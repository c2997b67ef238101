"""
Async HTTP with exponential backoff, shared by the provider modules.

Retries 429 and 5xx gateway errors plus transport errors:
    base_delay * 2^attempt + random jitter, honouring Retry-After.
Anything else is returned or raised on the first attempt.
"""

import json
import random
import asyncio
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 2.0        # seconds, doubles each retry: 2, 4, 8
JITTER_MAX = 1.0
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


async def request_with_backoff(
    method: str,
    url: str,
    *,
    provider: str,
    timeout: float = 60,
    max_retries: int = MAX_RETRIES,
    client: Optional[httpx.AsyncClient] = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Make an HTTP request, retrying transient failures.

    Raises httpx.HTTPStatusError for a non-retryable status or when the
    retries run out, httpx.RequestError for transport failures.
    """
    own_client = client is None
    client = client or httpx.AsyncClient(timeout=timeout)
    try:
        for attempt in range(max_retries + 1):
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.RequestError as e:
                if attempt >= max_retries:
                    raise
                delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                logger.warning(
                    f"{provider} request error on attempt {attempt + 1}/{max_retries + 1}: {e}; "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= max_retries:
                response.raise_for_status()
                return response

            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                delay = float(retry_after)
            else:
                delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            logger.warning(
                f"{provider} {response.status_code} on attempt {attempt + 1}/{max_retries + 1}; "
                f"retrying in {delay:.1f}s (url={url})"
            )
            await asyncio.sleep(delay)
    finally:
        if own_client:
            await client.aclose()

    raise RuntimeError(f"Request to {url} failed after {max_retries + 1} attempts")


def parse_json_text(text: str) -> Any:
    """Parse JSON from a model reply, tolerating a markdown code fence."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "```" in text:
            block = text.split("```")[1]
            if block.startswith("json"):
                block = block[4:]
            return json.loads(block.strip())
        raise ValueError(f"Model returned invalid JSON: {text[:200]}")
