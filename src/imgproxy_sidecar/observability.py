"""Observability setup - Logfire configuration.

We use logfire.info/warn/error/debug directly instead of
Python's logging module, so upload logs emitted from detached
tasks still land next to the request spans that spawned them.
"""

import sys

import logfire


def configure(service_name: str = "imgproxy_sidecar", debug: bool = False) -> None:
    """Configure Logfire for observability.

    Console output always goes to stderr: this is a standalone server and
    nothing else will report a fatal startup error.

    Args:
        service_name: Name to identify this service in traces.
        debug: If True, include debug-level logs on the console.
    """
    logfire.configure(
        service_name=service_name,
        scrubbing=False,  # Too aggressive, redacts image URLs in paths
        send_to_logfire="if-token-present",
        console=logfire.ConsoleOptions(
            min_log_level="debug" if debug else "info",
            output=sys.stderr,
        ),
    )

    # Backend calls show up as child spans of proxy.forward
    logfire.instrument_httpx()
