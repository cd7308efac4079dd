"""Capture-and-persist pipeline.

For a 200 response the proxy streams the backend body through `tee()`,
which hands each chunk to the client and appends it to a CaptureBuffer.
Only once the body has been read to the end is the buffer sealed and
given to a detached upload task:

    backend --> tee() --> client
                  |
                  +--> CaptureBuffer --seal()--> upload task --> object store

The upload task is never awaited by the request handler. Its result ends
in a log line.
"""

import asyncio
from typing import AsyncIterator, Protocol

import logfire

from .keys import NO_KEY, KeyPolicy, derive_key, storage_key

OK = 200


class Store(Protocol):
    @property
    def bucket(self) -> str: ...

    async def put(self, key: str, body: bytes, content_type: str | None = None) -> None: ...


class CaptureBuffer:
    """Accumulates one response body.

    Appends are allowed until seal(); after that the buffer is frozen and
    only the sealed bytes are handed on.
    """

    def __init__(self) -> None:
        self._chunks = bytearray()
        self._sealed = False

    def append(self, chunk: bytes) -> None:
        if self._sealed:
            raise RuntimeError("CaptureBuffer is sealed")
        self._chunks.extend(chunk)

    def seal(self) -> bytes:
        """Freeze the buffer and return its contents."""
        self._sealed = True
        return bytes(self._chunks)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def __len__(self) -> int:
        return len(self._chunks)


async def tee(source: AsyncIterator[bytes], buffer: CaptureBuffer) -> AsyncIterator[bytes]:
    """Yield chunks from source, copying each into buffer first.

    No read-ahead: the next chunk is only pulled from source after the
    caller has taken the current one.
    """
    async for chunk in source:
        buffer.append(chunk)
        yield chunk


class Capture:
    """One in-progress capture, bound to a single response."""

    def __init__(self, pipeline: "CapturePipeline", path: str, key: str):
        self._pipeline = pipeline
        self.path = path
        self.key = key
        self.buffer = CaptureBuffer()
        self._done = False

    def stream(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        return tee(source, self.buffer)

    def finish(self, content_type: str | None = None) -> None:
        """Hand the completed body to a detached upload task.

        Call only after the body was read to end-of-stream.
        """
        if self._done:
            return
        self._done = True
        self._pipeline.spawn_upload(self.path, self.key, self.buffer.seal(), content_type)

    def abandon(self, reason: str) -> None:
        """Drop a body that never reached end-of-stream."""
        if self._done:
            return
        self._done = True
        logfire.warn(
            "Capture abandoned",
            path=self.path,
            key=self.key,
            reason=reason,
            captured_bytes=len(self.buffer),
        )


class CapturePipeline:
    """Decides what to capture and runs the fire-and-forget uploads.

    Usage:
        capture = pipeline.begin(response.status_code, request.path, request.method)
        if capture is None:
            ...  # relay untouched
        else:
            async for chunk in capture.stream(body):
                await client.write(chunk)
            capture.finish(content_type)
    """

    def __init__(self, store: Store, folder: str = "", policy: KeyPolicy = KeyPolicy.PATH):
        self._store = store
        self._folder = folder
        self._policy = policy
        # Strong references only, so pending tasks are not garbage collected.
        # Nothing awaits these.
        self._tasks: set[asyncio.Task] = set()

    def begin(self, status: int, path: str, method: str = "GET") -> Capture | None:
        """Start a capture for a response, or return None to pass it through.

        A HEAD response has no body, so it is never captured.
        """
        if status != OK or method.upper() == "HEAD":
            return None

        key = derive_key(path, self._policy)
        if key == NO_KEY:
            logfire.info("Skipping upload: path has no cacheable suffix", path=path, policy=self._policy.value)
            return None

        return Capture(self, path, storage_key(self._folder, key))

    def spawn_upload(self, path: str, key: str, body: bytes, content_type: str | None) -> None:
        task = asyncio.create_task(self._upload(path, key, body, content_type))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def pending(self) -> int:
        """Number of uploads still in flight."""
        return len(self._tasks)

    async def _upload(self, path: str, key: str, body: bytes, content_type: str | None) -> None:
        with logfire.span("capture.upload", path=path, key=key, size=len(body)):
            try:
                await self._store.put(key, body, content_type)
            except Exception as e:
                logfire.error(
                    "Upload failed",
                    path=path,
                    bucket=self._store.bucket,
                    key=key,
                    error=str(e),
                )
                return

            logfire.info("Uploaded", path=path, bucket=self._store.bucket, key=key)
