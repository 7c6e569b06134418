"""Reachability checks for sync remotes."""

import logging
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)


async def probe_remote(url: str | None, timeout: float = 5.0) -> bool | None:
    """Check whether a git remote answers.

    http(s) remotes are asked for their smart-HTTP ref advertisement; a 401 or
    403 still counts as reachable since authentication is git's business.
    Local paths are checked on disk. Other transports (ssh) return None.

    Args:
        url: Remote repository URL.
        timeout: Request timeout in seconds.

    Returns:
        True if reachable, False if not, None if unknown.
    """
    if not url:
        return None

    if url.startswith(("http://", "https://")):
        probe_url = f"{url.rstrip('/')}/info/refs?service=git-upload-pack"
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                response = await client.get(probe_url)
        except httpx.HTTPError as e:
            logger.debug(f"Remote probe failed for {url}: {e}")
            return False
        return response.status_code in (200, 401, 403)

    if url.startswith("file://"):
        return Path(url[len("file://"):]).exists()

    if "://" not in url and not url.startswith("git@") and ":" not in url.split("/")[0]:
        return Path(url).expanduser().exists()

    return None
