"""Startup sequencer for the background fetch tasks.

Each configured remote source gets one delayed, fire-and-forget task: the
GFW-style list (which also regenerates the PAC script), the cloud rule file
and the IP-range file. A failed fetch is logged and whatever local file
already exists stays in use. Updated rule files are picked up by the
ReloadWatcher; lists and IP ranges are swapped into their filters here.
File I/O and list parsing run in the default executor, so the event loop
that carries proxied requests is never blocked by them.
"""

import asyncio
import logging

from .config import SpacConfig
from .fetch import FetchError, FetchResult, fetch_latest, file_mtime
from .gfwlist import ListFilter, RuleList, decode_list, generate_pac, load_list_files
from .iprange import IPRangeFilter, IPRangeTable

logger = logging.getLogger(__name__)

# Seconds to wait before the first fetch, so the local proxy is up
STARTUP_DELAY = 5.0


class Bootstrap:
    """Schedules and runs the remote fetch tasks."""

    def __init__(
        self,
        config: SpacConfig,
        list_filter: ListFilter,
        iprange_filter: IPRangeFilter,
        delay: float = STARTUP_DELAY,
    ):
        self.config = config
        self.list_filter = list_filter
        self.iprange_filter = iprange_filter
        self.delay = delay
        self._tasks: set[asyncio.Task] = set()

    # -- Scheduling --

    def schedule(self, loop: asyncio.AbstractEventLoop) -> list[asyncio.TimerHandle]:
        """Arm one delayed task per configured source."""
        jobs = []
        if self.config.gfwlist:
            jobs.append((self.refresh_gfwlist, self.config.gfwlist))
        if self.config.cloud_rule:
            jobs.append((self.fetch_cloud_rules, self.config.cloud_rule))
        if self.config.iprange_repo:
            jobs.append((self.load_iprange, self.config.iprange_repo))
        return [loop.call_later(self.delay, self._spawn, func, url) for func, url in jobs]

    def _spawn(self, func, url: str) -> None:
        task = asyncio.ensure_future(self._run(func, url))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, func, url: str) -> None:
        try:
            await func(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{func.__name__} failed for {url}: {e}")

    async def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # -- GFW-style list --

    def load_gfwlist(self) -> RuleList:
        """Load the downloaded and user lists into the list filter."""
        rule_list = load_list_files([self.config.gfwlist_path, self.config.user_gfwlist_path])
        self.list_filter.update(rule_list)
        logger.info(f"Loaded {len(rule_list)} list entries")
        return rule_list

    async def refresh_gfwlist(self, url: str) -> None:
        """Download the list if newer, regenerate the PAC, reload the filter."""
        logger.info(f"Generate PAC from gfwlist {url}")
        loop = asyncio.get_running_loop()
        try:
            result = await fetch_latest(
                url, self.config.proxy_port,
                if_modified_since=file_mtime(self.config.gfwlist_path),
            )
        except FetchError as e:
            logger.error(f"Failed to fetch gfwlist: {e}")
            await loop.run_in_executor(None, self.load_gfwlist)
            return
        await loop.run_in_executor(None, self._apply_gfwlist, url, result)

    def _apply_gfwlist(self, url: str, result: FetchResult) -> None:
        # Runs in a worker thread: file I/O and list parsing
        if result.changed:
            try:
                content = decode_list(result.body)
            except ValueError as e:
                logger.error(f"Failed to decode gfwlist from {url}: {e}")
                return
            path = self.config.gfwlist_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        rule_list = self.load_gfwlist()
        self.write_pac(rule_list, url, result.last_modified)

    def write_pac(self, rule_list: RuleList, source_url: str = "", last_modified: str = "") -> None:
        script = generate_pac(rule_list, self.config.pac_proxy, source_url, last_modified)
        self.config.pac_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pac_path.write_text(script, encoding="utf-8")
        logger.info(f"Wrote PAC with {len(rule_list)} rule(s) to {self.config.pac_path}")

    # -- Cloud rules --

    async def fetch_cloud_rules(self, url: str) -> None:
        """Download the cloud rule file if newer; the watcher reloads it."""
        logger.info(f"Fetch remote cloud spac rule:{url}")
        path = self.config.cloud_rules_path
        try:
            result = await fetch_latest(
                url, self.config.proxy_port, if_modified_since=file_mtime(path)
            )
        except FetchError as e:
            logger.error(f"Failed to fetch spac cloud script: {e}")
            return
        if result.changed:
            await asyncio.get_running_loop().run_in_executor(None, _write_file, path, result.body)

    # -- IP ranges --

    async def load_iprange(self, url: str) -> None:
        """Download the IP-range file once if missing, then load it."""
        path = self.config.iprange_path
        loop = asyncio.get_running_loop()
        if not path.exists():
            try:
                result = await fetch_latest(url, self.config.proxy_port, binary=True)
            except FetchError as e:
                logger.error(f"Failed to fetch ip range file: {e}")
                return
            await loop.run_in_executor(None, _write_file, path, result.body)
            logger.info("Fetch ip range file success.")
        table = await loop.run_in_executor(None, IPRangeTable.load, path)
        self.iprange_filter.update(table)
        logger.info(f"Loaded {len(table)} IP range(s)")


def _write_file(path, body: bytes | str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(body, bytes):
        path.write_bytes(body)
    else:
        path.write_text(body, encoding="utf-8")
