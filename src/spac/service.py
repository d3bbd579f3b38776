"""Wires configuration into the rule store, filters, selector and watchers."""

import asyncio
import logging

from .bootstrap import Bootstrap
from .config import SpacConfig
from .gfwlist import ListFilter
from .iprange import IPRangeFilter, IPRangeTable
from .rules.matcher import FilterRegistry
from .rules.store import RuleStore
from .rules.types import RuleSet
from .rules.watcher import ReloadWatcher
from .selector import HostAvailability, ProxySelector, local_addresses
from .upstream import ForwardHandle, UpstreamRegistry, qualify

logger = logging.getLogger(__name__)

# Built-in rule filter names
FILTER_GFWLIST = "InGFWList"
FILTER_IPRANGE = "InIPRange"


class SpacService:
    """Owns the process-wide routing state and its background tasks."""

    def __init__(
        self,
        config: SpacConfig,
        registry: UpstreamRegistry | None = None,
        hosts: HostAvailability | None = None,
        self_addresses: frozenset[str] | None = None,
    ):
        self.config = config
        self.registry = registry or UpstreamRegistry()
        for name, address in config.upstreams.items():
            self.registry.register(
                name, ForwardHandle(target=qualify(address), over_proxy=True, name=name)
            )

        self.list_filter = ListFilter()
        self.iprange_filter = IPRangeFilter()
        self.filters = FilterRegistry()
        self.filters.register(FILTER_GFWLIST, self.list_filter)
        self.filters.register(FILTER_IPRANGE, self.iprange_filter)

        self.store = RuleStore(RuleSet(default=config.default))
        self.watcher = ReloadWatcher(self.store, config.rule_paths)
        self.bootstrap = Bootstrap(config, self.list_filter, self.iprange_filter)
        self.selector = ProxySelector(
            self.store,
            self.registry,
            filters=self.filters,
            hosts=hosts,
            proxy_port=config.proxy_port,
            self_addresses=self_addresses if self_addresses is not None else local_addresses(),
            google_enable=config.google_enable,
        )

    def load_local(self) -> None:
        """Load whatever lists and rules already exist on disk."""
        self.config.spac_dir.mkdir(parents=True, exist_ok=True)
        self.bootstrap.load_gfwlist()
        if self.config.iprange_path.exists():
            self.iprange_filter.update(IPRangeTable.load(self.config.iprange_path))
        if self.config.enable:
            self.store.reload(self.config.rule_paths)

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self.load_local()
        self.bootstrap.schedule(loop)
        if self.config.enable:
            self.watcher.start()
        logger.info(
            f"spac started: enable={self.config.enable} "
            f"default={self.selector.default_name()} rules={len(self.store.current())}"
        )

    async def stop(self) -> None:
        self.watcher.stop(timeout=1.0)
        await self.bootstrap.cancel()
