"""Shared fixtures: a spy object store and a proxy wired to a fake backend."""

import asyncio

import httpx
import logfire
import pytest
from aiohttp.test_utils import TestClient, TestServer

from imgproxy_sidecar.capture import CapturePipeline
from imgproxy_sidecar.config import Settings
from imgproxy_sidecar.keys import KeyPolicy
from imgproxy_sidecar.proxy import ImageProxy

logfire.configure(send_to_logfire=False, console=False)

BACKEND_URL = "http://imgproxy.test"


def streamed(status: int = 200, body: bytes = b"", headers: dict | None = None) -> httpx.Response:
    """A backend response whose body is still unread, like one off a real connection.

    httpx reads `content=<bytes>` eagerly, which leaves nothing for aiter_raw().
    """

    async def chunks():
        yield body

    return httpx.Response(status, headers=headers, content=chunks())


class SpyStore:
    """Object store double that records puts.

    `uploaded` is set after each put attempt, so tests can wait for the
    detached upload task without the production code knowing about it.
    """

    bucket = "test-bucket"

    def __init__(self, fail: Exception | None = None):
        self.calls: list[tuple[str, bytes, str | None]] = []
        self.fail = fail
        self.uploaded = asyncio.Event()

    async def put(self, key: str, body: bytes, content_type: str | None = None) -> None:
        self.calls.append((key, body, content_type))
        self.uploaded.set()
        if self.fail is not None:
            raise self.fail

    async def wait_for(self, count: int, timeout: float = 2.0) -> None:
        async def _wait():
            while len(self.calls) < count:
                self.uploaded.clear()
                await self.uploaded.wait()

        await asyncio.wait_for(_wait(), timeout)


@pytest.fixture
def store():
    return SpyStore()


@pytest.fixture
async def make_proxy():
    """Build a proxy client in front of an httpx MockTransport handler."""
    opened: list[tuple[TestClient, httpx.AsyncClient]] = []

    async def _make(
        handler,
        store: SpyStore,
        policy: KeyPolicy = KeyPolicy.PATH,
        folder: str = "",
    ) -> tuple[TestClient, CapturePipeline]:
        settings = Settings(
            s3_bucket=store.bucket,
            s3_folder=folder,
            backend_url=BACKEND_URL,
            key_policy=policy,
        )
        pipeline = CapturePipeline(store, settings.s3_folder, settings.key_policy)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        proxy = ImageProxy(settings, pipeline, http_client=http_client)

        client = TestClient(TestServer(proxy.build_app()))
        await client.start_server()
        opened.append((client, http_client))
        return client, pipeline

    yield _make

    for client, http_client in opened:
        await client.close()
        await http_client.aclose()
