"""
Avatar storage — uploads image bytes and returns a public URL.

Backends:
  - LocalAssetUploader    — writes under a local directory served at public_base_url
  - CloudinaryUploader    — unsigned upload through a Cloudinary upload preset
"""
from __future__ import annotations

import abc
import mimetypes
import uuid
import structlog
from pathlib import Path
from typing import Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import UploadConfig

logger = structlog.get_logger()


class BaseAssetUploader(abc.ABC):

    @abc.abstractmethod
    async def upload(self, data: bytes, folder: str, filename: str, content_type: str) -> str:
        """Store the bytes and return the URL they are served from."""
        ...

    async def close(self) -> None:
        pass


class LocalAssetUploader(BaseAssetUploader):

    def __init__(self, root_dir: str = "./uploads", public_base_url: str = "http://localhost:8000/uploads"):
        self.root_dir = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/")

    async def upload(self, data: bytes, folder: str, filename: str, content_type: str) -> str:
        suffix = Path(filename).suffix or mimetypes.guess_extension(content_type) or ""
        name = f"{uuid.uuid4().hex}{suffix}"
        target_dir = self.root_dir / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        (target_dir / name).write_bytes(data)
        url = f"{self.public_base_url}/{folder}/{name}"
        logger.info("asset_uploaded", backend="local", url=url, size=len(data))
        return url


class CloudinaryUploader(BaseAssetUploader):

    def __init__(self, cloud_name: str, upload_preset: str):
        self.endpoint = f"https://api.cloudinary.com/v1_1/{cloud_name}/image/upload"
        self.upload_preset = upload_preset
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=60.0)
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def upload(self, data: bytes, folder: str, filename: str, content_type: str) -> str:
        client = await self._get_client()
        resp = await client.post(
            self.endpoint,
            data={"upload_preset": self.upload_preset, "folder": folder},
            files={"file": (filename, data, content_type)},
        )
        resp.raise_for_status()
        url = resp.json()["secure_url"]
        logger.info("asset_uploaded", backend="cloudinary", url=url, size=len(data))
        return url

    async def close(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()


def create_asset_uploader(config: UploadConfig) -> BaseAssetUploader:
    if config.provider == "cloudinary":
        return CloudinaryUploader(config.cloudinary_cloud_name, config.cloudinary_upload_preset)
    return LocalAssetUploader(config.local_dir, config.public_base_url)
