import asyncio
import logging
import signal
import sys

from localproxy.config import ProxyConfig, load_config
from localproxy.errors import ConfigError
from localproxy.listener import ProxyListener
from localproxy.logging_config import configure_logging, shutdown_logging
from localproxy.server import create_app
from localproxy.system_proxy import SystemProxyOrchestrator
from localproxy.transactions import TransactionStore

logger = logging.getLogger("uvicorn.error")


async def serve(config: ProxyConfig) -> None:
    """Run the proxy until SIGINT or SIGTERM."""
    store = TransactionStore()
    orchestrator = SystemProxyOrchestrator(backup_dir=config.backup_dir)
    app = create_app(config, store, orchestrator)
    listener = ProxyListener(config, app, store)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await listener.start()
    logger.info(f"Proxy endpoints available at http://{config.host}:{listener.port}/proxy/")
    try:
        await stop.wait()
        logger.info("Shutting down proxy server...")
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await listener.stop()


def main() -> int:
    try:
        config = load_config()
    except ConfigError as e:
        print(f"Failed to start proxy server: {e}", file=sys.stderr)
        return 1

    configure_logging(config)
    try:
        asyncio.run(serve(config))
    except OSError as e:
        logger.error(f"Failed to start proxy server: {e}")
        return 1
    finally:
        shutdown_logging()
    return 0


if __name__ == "__main__":
    sys.exit(main())
