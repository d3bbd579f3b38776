"""Remote content fetch for rule files, lists and IP ranges.

Downloads go through the local proxy (so the routing rules decide how the
fetch itself leaves the machine) and send ``If-Modified-Since`` so an
unchanged remote file costs a 304 with an empty body.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime

import aiohttp

logger = logging.getLogger(__name__)

USER_AGENT = "spac/0.1.0"
REQUEST_TIMEOUT = 60.0  # seconds


class FetchError(Exception):
    """A remote fetch failed (network error or non-success status)."""


@dataclass
class FetchResult:
    """Body is empty when the remote copy is not newer than ours."""

    body: bytes | str
    last_modified: str = ""

    @property
    def changed(self) -> bool:
        return len(self.body) > 0


async def fetch_latest(
    url: str,
    via_proxy_port: int | str | None = None,
    if_modified_since: datetime | None = None,
    binary: bool = False,
    session: aiohttp.ClientSession | None = None,
) -> FetchResult:
    """Fetch url if it changed since if_modified_since.

    Args:
        url: Remote location
        via_proxy_port: Local proxy port to send the request through
        if_modified_since: Modification time of our local copy, if any
        binary: Return bytes instead of decoded text
        session: Optional session to reuse (one is created otherwise)

    Raises:
        FetchError: On connection failure or an unexpected status.
    """
    headers = {"User-Agent": USER_AGENT}
    if if_modified_since is not None:
        if if_modified_since.tzinfo is None:
            if_modified_since = if_modified_since.replace(tzinfo=timezone.utc)
        headers["If-Modified-Since"] = format_datetime(
            if_modified_since.astimezone(timezone.utc), usegmt=True
        )
    proxy = f"http://127.0.0.1:{via_proxy_port}" if via_proxy_port else None

    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT))
    try:
        async with session.get(url, headers=headers, proxy=proxy) as response:
            last_modified = response.headers.get("Last-Modified", "")
            if response.status == 304:
                return FetchResult(body=b"" if binary else "", last_modified=last_modified)
            if response.status != 200:
                raise FetchError(f"{url}: unexpected status {response.status}")
            body = await response.read() if binary else await response.text()
            return FetchResult(body=body, last_modified=last_modified)
    except aiohttp.ClientError as e:
        raise FetchError(f"{url}: {e}") from e
    except asyncio.TimeoutError as e:
        raise FetchError(f"{url}: timed out after {REQUEST_TIMEOUT}s") from e
    except UnicodeDecodeError as e:
        raise FetchError(f"{url}: undecodable response body: {e}") from e
    finally:
        if own_session:
            await session.close()


def file_mtime(path) -> datetime | None:
    """Modification time of a local file as an aware datetime, or None."""
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    except OSError:
        return None
