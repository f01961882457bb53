from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional

from azure.core.exceptions import ResourceExistsError
from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
)

from meditation.config import settings

logger = logging.getLogger("azure_storage")


class AzureStorageService:
    """
    Long-term storage for voice, music and final mixes.

    Blobs land flat in MEDITATION_OUTPUT_CONTAINER under the name the stage
    chooses (meditation_voice_<id>_<ddmmYYYY>.wav etc.); the returned URL
    carries a read SAS valid for MEDITATION_SAS_HOURS.
    """

    def __init__(self, *, container: Optional[str] = None):
        self.connection_string = (settings.AZURE_STORAGE_CONNECTION_STRING or "").strip()
        if not self.connection_string:
            raise RuntimeError("missing_azure_storage_connection_string")

        self.container = (container or settings.MEDITATION_OUTPUT_CONTAINER).strip()
        if not self.container:
            raise RuntimeError("missing_meditation_container")

        self.sas_hours = settings.MEDITATION_SAS_HOURS if settings.MEDITATION_SAS_HOURS > 0 else 24

        self.blob_service = BlobServiceClient.from_connection_string(self.connection_string)

        parts = self._parse_connection_string(self.connection_string)
        self.account_name = (getattr(self.blob_service, "account_name", None) or parts.get("AccountName") or "").strip()
        self.account_key = (parts.get("AccountKey") or "").strip()

        if not self.account_name or not self.account_key:
            # SAS-only connection strings can't mint read URLs
            raise RuntimeError("could_not_parse_storage_account_credentials")

        self._container_client = self.blob_service.get_container_client(self.container)
        self._container_checked = False

    @staticmethod
    def _parse_connection_string(cs: str) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for item in (cs or "").split(";"):
            if "=" not in item:
                continue
            k, v = item.split("=", 1)
            k = k.strip()
            if k:
                out[k] = v.strip()
        return out

    @staticmethod
    def _clean_name(name: str) -> str:
        s = (name or "").strip().replace("\\", "/").lstrip("/")
        return "/".join(seg for seg in s.split("/") if seg and seg not in (".", ".."))

    def _ensure_container(self) -> None:
        if self._container_checked:
            return
        try:
            self._container_client.create_container()
        except ResourceExistsError:
            pass
        self._container_checked = True

    def sas_url_for(self, blob_name: str) -> str:
        now = datetime.now(timezone.utc)
        start = now - timedelta(minutes=5)  # clock skew
        expiry = now + timedelta(hours=self.sas_hours)

        sas_token = generate_blob_sas(
            account_name=self.account_name,
            container_name=self.container,
            blob_name=blob_name,
            account_key=self.account_key,
            permission=BlobSasPermissions(read=True),
            start=start,
            expiry=expiry,
        )
        return f"https://{self.account_name}.blob.core.windows.net/{self.container}/{blob_name}?{sas_token}"

    def _sync_upload_file(self, *, blob_name: str, local_path: Path, content_type: str) -> None:
        self._ensure_container()
        blob_client = self.blob_service.get_blob_client(container=self.container, blob=blob_name)
        with local_path.open("rb") as f:
            blob_client.upload_blob(
                f,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
            )

    async def upload(self, local_path: str, name: str, mime_type: str) -> str:
        p = Path(local_path)
        if not p.exists() or not p.is_file():
            raise ValueError(f"local_file_not_found: {p}")

        blob_name = self._clean_name(name)
        if not blob_name:
            raise ValueError("invalid_blob_name")

        content_type = (mime_type or "").strip() or "application/octet-stream"
        await asyncio.to_thread(self._sync_upload_file, blob_name=blob_name, local_path=p, content_type=content_type)

        logger.info("blob_uploaded", extra={"container": self.container, "blob": blob_name})
        return self.sas_url_for(blob_name)
