"""Upload podcast audio to Google Cloud Storage."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Mapping

from google.cloud import storage
from google.oauth2 import service_account

LOGGER = logging.getLogger(__name__)

AUDIO_CONTENT_TYPE = "audio/mpeg"


def podcast_blob_name(metadata: Mapping[str, Any]) -> str:
    """``podcasts/<user>/<YYYY-MM-DD>/summary-<id>-<ms>.mp3``"""

    generated_at = str(metadata.get("generated_at") or "")
    day = generated_at[:10] or time.strftime("%Y-%m-%d", time.gmtime())
    return "podcasts/{user}/{day}/summary-{summary}-{ts}.mp3".format(
        user=metadata["user_id"],
        day=day,
        summary=metadata["summary_id"],
        ts=int(time.time() * 1000),
    )


class GCSObjectStore:
    """Object store that writes public podcast audio blobs."""

    def __init__(
        self,
        *,
        bucket_name: str | None,
        credentials_json: str | None = None,
        client: storage.Client | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._bucket_name = bucket_name
        self._credentials_json = credentials_json
        self._client = client
        self._logger = logger or LOGGER

    def _get_client(self) -> storage.Client:
        if self._client is not None:
            return self._client
        if not self._credentials_json:
            self._client = storage.Client()
            return self._client
        creds_info = json.loads(self._credentials_json)
        credentials = service_account.Credentials.from_service_account_info(creds_info)
        self._client = storage.Client(credentials=credentials, project=credentials.project_id)
        return self._client

    def _upload(self, data: bytes, metadata: Mapping[str, Any]) -> str:
        if not self._bucket_name:
            raise RuntimeError("GCS_BUCKET_NAME is required for audio uploads.")
        blob_name = podcast_blob_name(metadata)
        bucket = self._get_client().bucket(self._bucket_name)
        blob = bucket.blob(blob_name)
        blob.metadata = {key.replace("_", "-"): str(value) for key, value in metadata.items() if value is not None}
        blob.upload_from_string(data, content_type=AUDIO_CONTENT_TYPE)
        return f"https://storage.googleapis.com/{self._bucket_name}/{blob_name}"

    async def put(self, data: bytes, metadata: Mapping[str, Any]) -> str:
        url = await asyncio.to_thread(self._upload, data, metadata)
        self._logger.info(
            "Uploaded podcast audio to GCS: %s",
            url,
            extra={"event": "storage.uploaded", "bytes": len(data)},
        )
        return url


__all__ = ["AUDIO_CONTENT_TYPE", "GCSObjectStore", "podcast_blob_name"]
