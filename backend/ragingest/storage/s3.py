"""
S3 Storage Service — document file retrieval

Key layout (written by the upload flow, read here):
    s3://<BUCKET>/documents/<bot_id>/<uuid>.<ext>

The processing pipeline needs exactly one operation: fetch the raw bytes
for a key, distinguishing "object does not exist" from a transport error.

  get_file(key) → bytes        object found
  get_file(key) → None         object absent (NoSuchKey / 404 / NotFound)
  get_file(key) → raises       anything else (credentials, throttling, network)
"""

from __future__ import annotations

import logging

import aioboto3
from botocore.exceptions import ClientError

from ragingest.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# S3 error codes that mean "no such object" rather than a failed request
_MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


class S3StorageService:
    """
    Async S3 reads against a single bucket.

    One instance per worker process; a fresh client context is opened per
    call (aioboto3 clients are cheap to create and must not outlive a loop).
    """

    def __init__(self, config: Settings | None = None, bucket: str | None = None) -> None:
        self._cfg = config or default_settings
        self._bucket = bucket or self._cfg.s3_bucket
        self._session = aioboto3.Session(
            aws_access_key_id=self._cfg.aws_access_key_id or None,
            aws_secret_access_key=self._cfg.aws_secret_access_key or None,
            region_name=self._cfg.aws_region,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._cfg.aws_region,
            endpoint_url=self._cfg.s3_endpoint_url or None,
        )

    async def get_file(self, key: str) -> bytes | None:
        """
        Download an object. Returns None when the object does not exist;
        every other ClientError propagates to the caller.
        """
        logger.info("S3 download | bucket=%s key=%s", self._bucket, key)
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                body = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code", "")
                if code in _MISSING_CODES:
                    logger.warning("S3 object missing | bucket=%s key=%s", self._bucket, key)
                    return None
                raise

        logger.info("S3 download ok | key=%s size=%d", key, len(body))
        return body
