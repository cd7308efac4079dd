"""Object-store client wrapper.

One boto3 S3 client is created at startup and shared by every upload task.
boto3 clients are thread-safe, and each put runs in the default executor so
the event loop never blocks on the network write.
"""

import asyncio
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings


class UploadError(Exception):
    """A single put to the object store failed."""


class BlobStore:
    """Put-only view of an S3-compatible bucket."""

    def __init__(self, client: Any, bucket: str):
        self._client = client
        self._bucket = bucket

    @classmethod
    def from_settings(cls, settings: Settings) -> "BlobStore":
        """Build the shared client from settings.

        Retries are disabled: every put is a single attempt.
        """
        config_args: dict[str, Any] = {"retries": {"total_max_attempts": 1}}
        if settings.s3_path_style:
            config_args["s3"] = {"addressing_style": "path"}

        client_args: dict[str, Any] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        session = boto3.session.Session()
        client = session.client(
            "s3",
            config=Config(**config_args),
            **{k: v for k, v in client_args.items() if v},
        )
        return cls(client, settings.s3_bucket)

    @property
    def bucket(self) -> str:
        return self._bucket

    async def put(self, key: str, body: bytes, content_type: str | None = None) -> None:
        """Write body at key.

        Raises:
            UploadError: If the store rejected the write or could not be reached.
        """
        params: dict[str, Any] = {"Bucket": self._bucket, "Key": key, "Body": body}
        if content_type:
            params["ContentType"] = content_type
        try:
            await asyncio.to_thread(self._client.put_object, **params)
        except (BotoCoreError, ClientError) as e:
            raise UploadError(f"put_object {self._bucket}/{key} failed: {e}") from e
