"""Object storage over the Supabase Storage REST API.

Objects are private; the client only ever sees short-lived signed URLs.
Signed URLs are cached slightly shorter than their lifetime so a cached URL
is never handed out after it has expired.
"""

import uuid
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from app.core.cache import TTLCache
from app.core.config import settings
from app.core.errors import StorageError, categorize_error
from app.core.http import http_session
from app.services.image_processing import decode_base64_image, make_thumbnail

logger = structlog.get_logger()


@dataclass(frozen=True)
class StoredImage:
    path: str
    thumbnail_path: str | None = None


def object_path(user_id: int, folder: str, file_name: str) -> str:
    """User-scoped, collision-free object key."""
    safe_name = file_name.replace("/", "_") or "image.png"
    return f"{user_id}/{folder}/{uuid.uuid4().hex}-{safe_name}"


def thumbnail_path_for(path: str) -> str:
    folder, _, name = path.rpartition("/")
    stem = name.rsplit(".", 1)[0]
    return f"{folder}/thumbnails/{stem}.jpg"


class ObjectStorage:
    """Upload, sign, download and delete objects in one bucket."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        service_key: str | None = None,
        bucket: str | None = None,
        url_cache: TTLCache[str, str] | None = None,
    ) -> None:
        self.http_client = http_client
        self.base_url = (base_url or settings.STORAGE_URL).rstrip("/")
        self.service_key = service_key if service_key is not None else settings.STORAGE_SERVICE_KEY
        self.bucket = bucket or settings.STORAGE_BUCKET
        self.url_cache = url_cache or TTLCache(
            settings.SIGNED_URL_EXPIRES_SECONDS - settings.SIGNED_URL_CACHE_MARGIN_SECONDS
        )

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = dict(extra)
        if self.service_key:
            headers["Authorization"] = f"Bearer {self.service_key}"
            headers["apikey"] = self.service_key
        return headers

    def _url(self, suffix: str) -> str:
        return f"{self.base_url}/storage/v1/{suffix}"

    async def _request(self, method: str, url: str, operation: str, **kwargs: Any) -> httpx.Response:
        async with http_session(self.http_client, settings.STORAGE_TIMEOUT) as client:
            try:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                error = categorize_error(exc)
                logger.warning("storage_request_failed", operation=operation, kind=error.kind.value)
                raise StorageError(f"Storage {operation} failed", details={"cause": error.kind.value}) from exc
        return response

    async def upload(self, path: str, content: bytes, content_type: str = "image/png") -> str:
        await self._request(
            "POST",
            self._url(f"object/{self.bucket}/{path}"),
            "upload",
            content=content,
            headers=self._headers(**{"Content-Type": content_type, "x-upsert": "true"}),
        )
        self.url_cache.delete(path)
        logger.info("storage_object_uploaded", path=path, size=len(content))
        return path

    async def signed_url(self, path: str) -> str:
        cached = self.url_cache.get(path)
        if cached is not None:
            return cached

        response = await self._request(
            "POST",
            self._url(f"object/sign/{self.bucket}/{path}"),
            "sign",
            json={"expiresIn": settings.SIGNED_URL_EXPIRES_SECONDS},
            headers=self._headers(),
        )
        signed = response.json().get("signedURL")
        if not signed:
            raise StorageError("Storage did not return a signed URL")

        url = signed if signed.startswith("http") else f"{self.base_url}/storage/v1{signed}"
        self.url_cache.set(path, url)
        return url

    async def download(self, path: str) -> bytes:
        response = await self._request(
            "GET",
            self._url(f"object/authenticated/{self.bucket}/{path}"),
            "download",
            headers=self._headers(),
        )
        return response.content

    async def delete(self, *paths: str) -> None:
        if not paths:
            return
        await self._request(
            "DELETE",
            self._url(f"object/{self.bucket}"),
            "delete",
            json={"prefixes": list(paths)},
            headers=self._headers(),
        )
        for path in paths:
            self.url_cache.delete(path)
        logger.info("storage_objects_deleted", count=len(paths))

    async def upload_image_with_thumbnail(
        self, user_id: int, image: str | bytes, file_name: str, folder: str = "mockups"
    ) -> StoredImage:
        """Store an image (base64 or bytes) plus its JPEG thumbnail.

        A thumbnail failure keeps the full image and returns no thumbnail.
        """
        content = decode_base64_image(image) if isinstance(image, str) else image
        path = await self.upload(object_path(user_id, folder, file_name), content)

        try:
            thumbnail = make_thumbnail(content)
            thumb_path = await self.upload(thumbnail_path_for(path), thumbnail, "image/jpeg")
        except Exception as exc:
            logger.warning("thumbnail_upload_failed", path=path, error=str(exc))
            thumb_path = None

        return StoredImage(path=path, thumbnail_path=thumb_path)


_storage: ObjectStorage | None = None


def get_storage() -> ObjectStorage:
    """FastAPI dependency; one instance so the signed URL cache is shared."""
    global _storage
    if _storage is None:
        _storage = ObjectStorage()
    return _storage
