"""Stored image reference checks.

Sessions reference images that were uploaded elsewhere. Before a session
is registered, each URL is checked syntactically; with VALIDATE_IMAGES
enabled, each URL is also requested to confirm it resolves to an image.

Features:
    - HEAD request, falling back to GET for servers that reject HEAD
    - SSL fallback for problematic certificates
    - Concurrent checks bounded by a semaphore
"""

import asyncio
import logging
import ssl
from dataclasses import dataclass
from urllib.parse import urlparse

import aiohttp
import certifi

from errors import ErrorCategory, categorize_error, status_category

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")
MAX_IMAGES = 10
USER_AGENT = "Lens/0.1 (+design critique pipeline; image reference check)"


def create_ssl_context(verify: bool = True) -> ssl.SSLContext:
    """SSL context using the certifi bundle, or with verification disabled."""
    if verify:
        return ssl.create_default_context(cafile=certifi.where())
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


@dataclass
class ImageCheck:
    """Result of checking one image URL.

    `category` is set when the failure is the host's (unreachable, auth,
    rate limit) rather than a bad reference.
    """

    url: str
    ok: bool
    status: int | None = None
    content_type: str = ""
    error: str | None = None
    category: ErrorCategory | None = None


def validate_image_urls(urls: list[str]) -> list[str]:
    """Check image references are well-formed http(s) URLs.

    Returns:
        The URLs with surrounding whitespace removed, in order

    Raises:
        ValueError: If the list is too long or any URL is malformed
    """
    if len(urls) > MAX_IMAGES:
        raise ValueError(f"At most {MAX_IMAGES} images per session (got {len(urls)})")
    cleaned = []
    for url in urls:
        url = url.strip()
        parsed = urlparse(url)
        if parsed.scheme not in ALLOWED_SCHEMES or not parsed.netloc:
            raise ValueError(f"Invalid image URL: '{url}'")
        cleaned.append(url)
    return cleaned


async def check_image(
    session: aiohttp.ClientSession,
    url: str,
    timeout: int = 10,
) -> ImageCheck:
    """Confirm a URL resolves to an image."""

    async def request(method: str, verify: bool) -> tuple[int, str]:
        async with session.request(
            method,
            url,
            timeout=aiohttp.ClientTimeout(total=timeout),
            headers={"User-Agent": USER_AGENT},
            ssl=create_ssl_context(verify),
            allow_redirects=True,
        ) as resp:
            return resp.status, resp.headers.get("Content-Type", "")

    try:
        try:
            status, content_type = await request("HEAD", verify=True)
        except aiohttp.ClientSSLError:
            logger.debug("SSL error, retrying without verification: %s", url)
            status, content_type = await request("HEAD", verify=False)
        if status in (403, 405):
            status, content_type = await request("GET", verify=True)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        category = categorize_error(e)
        if category == ErrorCategory.UNKNOWN:
            category = ErrorCategory.NETWORK
        return ImageCheck(url=url, ok=False, error=f"{type(e).__name__}: {e}", category=category)

    if status != 200:
        return ImageCheck(
            url=url, ok=False, status=status, content_type=content_type,
            error=f"HTTP {status}", category=status_category(status),
        )
    if not content_type.lower().startswith("image/"):
        return ImageCheck(
            url=url, ok=False, status=status, content_type=content_type,
            error=f"Not an image (Content-Type: {content_type or 'missing'})",
        )
    return ImageCheck(url=url, ok=True, status=status, content_type=content_type)


async def check_images(
    urls: list[str],
    timeout: int = 10,
    max_concurrent: int = 4,
) -> list[ImageCheck]:
    """Check several image URLs concurrently. Results keep input order."""
    semaphore = asyncio.Semaphore(max_concurrent)

    async with aiohttp.ClientSession() as session:
        async def bounded(url: str) -> ImageCheck:
            async with semaphore:
                return await check_image(session, url, timeout=timeout)

        results = await asyncio.gather(*(bounded(url) for url in urls))

    failed = [r for r in results if not r.ok]
    if failed:
        logger.warning("Image check failed | failed=%d total=%d first=%s", len(failed), len(results), failed[0].error)
    return list(results)
