"""Async reverse proxy in front of imgproxy.

Runs an aiohttp server with a single catch-all route:
1. Receives any request from a client
2. Forwards it unchanged to the backend (hop-by-hop headers aside)
3. Streams the backend response straight back to the client
4. For 200 responses, tees the body into a capture that is uploaded
   to the object store after the client has been served

The upload never delays or fails the client response. See capture.py.
"""

import asyncio
import socket

import httpx
import logfire
from aiohttp import web

from .capture import CapturePipeline
from .config import Settings

# Per-connection headers, never forwarded in either direction (RFC 9110 7.6.1)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

READY_POLL_INTERVAL = 0.5
READY_REQUEST_TIMEOUT = 2.0
FORWARD_TIMEOUT = httpx.Timeout(300.0, connect=10.0)


class BackendNotReady(Exception):
    """The backend never reported healthy within the startup timeout."""


def _find_free_port() -> int:
    """Find an available port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


def _hop_by_hop(connection: list[str]) -> set[str]:
    """Standard hop-by-hop names plus any listed in Connection header values."""
    names = set(HOP_BY_HOP_HEADERS)
    for value in connection:
        names.update(v.strip().lower() for v in value.split(",") if v.strip())
    return names


async def wait_until_ready(
    client: httpx.AsyncClient,
    base_url: str,
    health_path: str = "/health",
    timeout: float = 30.0,
    interval: float = READY_POLL_INTERVAL,
) -> None:
    """Poll the backend health endpoint until it answers 200.

    The backend is started as a sibling process, so it may not be
    listening yet when we come up.

    Raises:
        BackendNotReady: If no 200 was seen before timeout elapsed.
    """
    url = f"{base_url}{health_path}"
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempts = 0

    with logfire.span("proxy.wait_until_ready", url=url, timeout=timeout) as span:
        while loop.time() < deadline:
            attempts += 1
            try:
                response = await client.get(url, timeout=READY_REQUEST_TIMEOUT)
                if response.status_code == 200:
                    span.set_attribute("attempts", attempts)
                    return
                logfire.debug(f"Backend not ready: HTTP {response.status_code}")
            except httpx.HTTPError as e:
                logfire.debug(f"Backend not ready: {e!r}")
            await asyncio.sleep(interval)

        span.set_attribute("attempts", attempts)
        raise BackendNotReady(f"health check failed after {timeout:g}s ({attempts} attempts)")


class ImageProxy:
    """Reverse proxy server with write-through capture.

    Usage:
        proxy = ImageProxy(settings, pipeline)
        await proxy.wait_until_ready()
        await proxy.start()

        # ... serve until shutdown ...

        await proxy.stop()
    """

    def __init__(
        self,
        settings: Settings,
        pipeline: CapturePipeline,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the proxy.

        Args:
            settings: Startup settings (backend URL, bind address, ...)
            pipeline: Capture pipeline that receives 200 response bodies
            http_client: Client used to reach the backend. If omitted, one is
                created and closed by stop().
        """
        self.settings = settings
        self.pipeline = pipeline

        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=FORWARD_TIMEOUT)
        self._port: int | None = None
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        """The aiohttp application: one route, every method, every path."""
        app = web.Application()
        app.router.add_route("*", "/{path:.*}", self._handle_request)
        return app

    async def wait_until_ready(self) -> None:
        await wait_until_ready(
            self._http_client,
            self.settings.backend_url,
            self.settings.health_path,
            self.settings.health_timeout,
        )

    async def start(self) -> int:
        """Start the proxy server.

        Returns:
            The port number the server is listening on.

        Raises:
            OSError: If the listen socket cannot be bound.
        """
        self._port = self.settings.bind_port or _find_free_port()

        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.settings.bind_host, self._port)
        try:
            await self._site.start()
        except OSError:
            await self._runner.cleanup()
            self._runner = None
            raise

        logfire.info(f"Image proxy listening on {self.settings.bind_host}:{self._port}")
        return self._port

    async def stop(self) -> None:
        """Stop the proxy server. Uploads still in flight are abandoned."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        if self._owns_client:
            await self._http_client.aclose()

        self._site = None
        self._app = None

        logfire.debug("Image proxy stopped", pending_uploads=self.pipeline.pending)

    @property
    def base_url(self) -> str:
        """Get the base URL for this proxy."""
        if self._port is None:
            raise RuntimeError("Proxy not started")
        return f"http://127.0.0.1:{self._port}"

    @property
    def port(self) -> int | None:
        """Get the port number."""
        return self._port

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        """Handle every incoming request."""
        with logfire.span(
            "proxy.forward",
            path=request.path,
            method=request.method,
        ) as span:
            return await self._forward_request(request, span)

    def _forward_headers(self, request: web.Request) -> list[tuple[str, str]]:
        """Client headers for the backend request.

        Host is left to httpx so it names the backend, and the original
        host goes into X-Forwarded-Host.
        """
        skip = _hop_by_hop(request.headers.getall("connection", []))
        skip |= {"host", "x-forwarded-host", "x-forwarded-proto"}
        headers = [(k, v) for k, v in request.headers.items() if k.lower() not in skip]

        if request.remote:
            prior = request.headers.get("x-forwarded-for")
            forwarded_for = f"{prior}, {request.remote}" if prior else request.remote
            headers = [(k, v) for k, v in headers if k.lower() != "x-forwarded-for"]
            headers.append(("X-Forwarded-For", forwarded_for))
        # Otherwise httpx asks for gzip on the client's behalf and we relay raw bytes
        if "accept-encoding" not in request.headers:
            headers.append(("Accept-Encoding", "identity"))
        headers.append(("X-Forwarded-Host", request.host))
        headers.append(("X-Forwarded-Proto", request.scheme))
        return headers

    async def _forward_request(
        self,
        request: web.Request,
        span: logfire.LogfireSpan,
    ) -> web.StreamResponse:
        """Forward a request to the backend and relay the answer."""
        # raw_path keeps the query string and the client's percent-encoding.
        # httpx.URL collapses dot segments, so the "target" extension puts
        # the path on the wire exactly as received.
        url = f"{self.settings.backend_url}{request.raw_path}"
        base_path = httpx.URL(self.settings.backend_url).raw_path.rstrip(b"/")
        target = base_path + request.raw_path.encode("utf-8")
        content = request.content.iter_any() if request.body_exists else None

        try:
            backend_request = self._http_client.build_request(
                request.method,
                url,
                headers=self._forward_headers(request),
                content=content,
                extensions={"target": target},
            )
        except httpx.InvalidURL as e:
            logfire.warn(f"Unforwardable request path: {e}", path=request.raw_path)
            return web.Response(status=400, text="Bad Request")

        try:
            response = await self._http_client.send(backend_request, stream=True)
        except httpx.TimeoutException as e:
            logfire.error(f"Backend timed out: {e!r}", path=request.path)
            span.set_attribute("status_code", 504)
            return web.Response(status=504, text="Gateway Timeout")
        except httpx.HTTPError as e:
            logfire.error(f"Backend unreachable: {e!r}", path=request.path)
            span.set_attribute("status_code", 502)
            return web.Response(status=502, text="Bad Gateway")

        try:
            return await self._relay(request, response, span)
        finally:
            await response.aclose()

    async def _relay(
        self,
        request: web.Request,
        response: httpx.Response,
        span: logfire.LogfireSpan,
    ) -> web.StreamResponse:
        """Stream the backend response to the client, capturing 200 bodies."""
        span.set_attribute("status_code", response.status_code)

        resp = web.StreamResponse(status=response.status_code, reason=response.reason_phrase)
        skip = _hop_by_hop(response.headers.get_list("connection"))
        for key, value in response.headers.multi_items():
            if key.lower() not in skip:
                resp.headers.add(key, value)

        capture = self.pipeline.begin(response.status_code, request.path, request.method)
        span.set_attribute("captured", capture is not None)

        # Raw bytes: whatever Content-Encoding the backend used goes through as is
        body = response.aiter_raw()
        if capture is not None:
            body = capture.stream(body)

        completed = False
        try:
            await resp.prepare(request)
            async for chunk in body:
                await resp.write(chunk)
            await resp.write_eof()
            completed = True
        except httpx.HTTPError as e:
            # Headers are already out, so all we can do is cut the connection
            logfire.error(f"Backend failed mid-response: {e!r}", path=request.path)
            raise
        finally:
            if capture is not None:
                if completed:
                    capture.finish(response.headers.get("content-type"))
                else:
                    capture.abandon("response body was not delivered to the end")

        return resp
