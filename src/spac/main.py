#!/usr/bin/env python3
"""
Rule-based upstream selection proxy built on mitmproxy.

Handles:
- Plain HTTP and CONNECT requests on the main proxy port
- Extra listener ports bound to a fixed tunnel (GAE, C4, SSH)
- Serving the generated PAC script to clients that ask the proxy itself

Rule files are reloaded live; lists and IP ranges are refreshed in the
background shortly after startup.
"""

import asyncio
import os
import signal
import sys
from pathlib import Path

from mitmproxy.options import Options
from mitmproxy.tools.dump import DumpMaster

from . import logging as spac_logging
from .config import ConfigError, SpacConfig
from .handlers import SpacAddon
from .service import SpacService

# Graceful shutdown timeout (seconds)
SHUTDOWN_TIMEOUT = 3.0


def listen_modes(config: SpacConfig) -> list[str]:
    """mitmproxy modes for the main port and every fixed-tunnel listener."""
    modes = [f"regular@{config.proxy_port}"]
    for port in sorted(config.listeners):
        if port != config.proxy_port:
            modes.append(f"regular@{port}")
    return modes


async def run_mitmproxy(service: SpacService):
    """Run mitmproxy with our addon."""
    logger = spac_logging.logger
    logger.info("Initializing mitmproxy...")
    master = None
    try:
        opts = Options(mode=listen_modes(service.config), showhost=True)
        master = DumpMaster(opts, with_termlog=False, with_dumper=False)
        master.addons.add(SpacAddon(service))
        logger.info(f"Starting mitmproxy on {', '.join(opts.mode)}...")
        await master.run()
    except asyncio.CancelledError:
        logger.info("mitmproxy cancelled")
        raise  # Must re-raise for proper task cancellation
    except Exception as e:
        logger.error(f"mitmproxy failed: {e}")
        import traceback
        logger.error(traceback.format_exc())
        raise
    finally:
        if master:
            logger.info("Shutting down mitmproxy master...")
            master.shutdown()


async def shutdown(service: SpacService, tasks: list, timeout: float = SHUTDOWN_TIMEOUT):
    """Cancel the proxy tasks, then stop the reload watcher and fetch tasks."""
    logger = spac_logging.logger
    pending = [task for task in tasks if not task.done()]
    for task in pending:
        logger.info(f"Cancelling task: {task.get_name()}")
        task.cancel()

    if pending:
        done, stuck = await asyncio.wait(pending, timeout=timeout)
        for task in stuck:
            logger.warning(f"Task {task.get_name()} still running after {timeout}s")
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning(f"Task {task.get_name()} ended with error: {task.exception()}")

    await service.stop()


async def main(config: SpacConfig):
    """Main entry point."""
    logger = spac_logging.logger
    logger.info("=" * 50)
    logger.info("spac Starting")
    logger.info(f"PID: {os.getpid()}")
    logger.info("=" * 50)

    loop = asyncio.get_running_loop()
    service = SpacService(config)
    service.start(loop)

    stop_event = asyncio.Event()

    def signal_handler(signum):
        sig_name = signal.Signals(signum).name
        logger.info(f"Received signal {sig_name} ({signum})")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    mitmproxy_task = asyncio.create_task(run_mitmproxy(service), name="mitmproxy")
    tasks = [mitmproxy_task]
    stop_task = asyncio.create_task(stop_event.wait(), name="stop_signal")

    try:
        done, _ = await asyncio.wait(
            [stop_task, mitmproxy_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in done:
            if task != stop_task and task.exception():
                logger.error(f"Task {task.get_name()} failed: {task.exception()}")
    finally:
        logger.info("Shutting down...")
        stop_task.cancel()
        await shutdown(service, tasks)
        logger.info("Shutdown complete")
        logger.info("=" * 50)


def run(config_path: str | Path | None = None) -> int:
    """Load configuration and run the proxy until signalled. Returns exit status."""
    spac_logging.init_logging()
    try:
        config = SpacConfig.load(config_path)
    except (ConfigError, OSError) as e:
        spac_logging.logger.error(f"Invalid configuration: {e}")
        print(f"Error: {e}", file=sys.stderr)
        spac_logging.close_logging()
        return 2

    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        spac_logging.logger.info("Interrupted by user")
    except Exception as e:
        spac_logging.logger.error(f"Fatal error: {e}")
        return 1
    finally:
        spac_logging.close_logging()
    return 0


if __name__ == "__main__":
    sys.exit(run(sys.argv[1] if len(sys.argv) > 1 else None))
