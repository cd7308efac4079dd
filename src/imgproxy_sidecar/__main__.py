"""Process entry point: `imgproxy-sidecar` or `python -m imgproxy_sidecar`.

Startup order:
1. Settings from the environment
2. Logfire
3. Object-store client, capture pipeline, proxy
4. Wait for the backend to report healthy
5. Serve until SIGINT/SIGTERM

Any failure in steps 1-5 before serving exits non-zero.
"""

import asyncio
import signal
import sys

import httpx
import logfire
from botocore.exceptions import BotoCoreError

from .capture import CapturePipeline
from .config import ConfigError, Settings
from .observability import configure
from .proxy import BackendNotReady, ImageProxy
from .storage import BlobStore

EXIT_CONFIG = 2
EXIT_NOT_READY = 3
EXIT_BIND = 4


async def serve(
    settings: Settings,
    store: BlobStore,
    http_client: httpx.AsyncClient | None = None,
) -> int:
    """Run the proxy until the process is told to stop. Returns an exit code."""
    pipeline = CapturePipeline(store, settings.s3_folder, settings.key_policy)
    proxy = ImageProxy(settings, pipeline, http_client=http_client)

    try:
        logfire.info("Waiting for imgproxy to be ready...", url=settings.backend_url)
        try:
            await proxy.wait_until_ready()
        except BackendNotReady as e:
            logfire.error(f"Health check failed: {e}")
            return EXIT_NOT_READY
        logfire.info("imgproxy is ready")

        try:
            await proxy.start()
        except OSError as e:
            logfire.error(f"Server failed: {e}", host=settings.bind_host, port=settings.bind_port)
            return EXIT_BIND

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:  # Windows
                pass
        await stop.wait()
        return 0
    finally:
        await proxy.stop()


def main() -> None:
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        configure()
        logfire.error(f"Missing or invalid configuration: {e}")
        sys.exit(EXIT_CONFIG)

    configure(debug=settings.debug)

    try:
        store = BlobStore.from_settings(settings)
    except (BotoCoreError, ValueError) as e:
        logfire.error(f"Failed to initialize object store client: {e}")
        sys.exit(EXIT_CONFIG)

    sys.exit(asyncio.run(serve(settings, store)))


if __name__ == "__main__":
    main()
