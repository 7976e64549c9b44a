"""Platform operations executed against a connected integration.

Each handler maps capability strings (``list_folders``, ``sync_products``,
...) onto one provider API call plus, where relevant, a local persistence
step.
"""

import asyncio
import base64
import json
import uuid
from abc import ABC
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, ClassVar

import httpx
import pydantic
import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ValidationError, categorize_error
from app.models.imported_product import ImportedProduct
from app.services.image_processing import decode_base64_image

logger = structlog.get_logger()

DRIVE_FOLDER_MIME = "application/vnd.google-apps.folder"


@dataclass
class SyncContext:
    """Everything an operation needs; the decrypted token never leaves it."""

    db: AsyncSession
    user_id: int
    integration_id: str
    access_token: str
    settings: dict[str, Any]
    client: httpx.AsyncClient


@dataclass(frozen=True)
class UploadFile:
    name: str
    content: bytes
    mime_type: str = "image/png"


def parse_upload_files(params: dict[str, Any]) -> list[UploadFile]:
    """Read ``files: [{name, data, mime_type?}]`` with base64 or data-URL payloads."""
    raw_files = params.get("files")
    if not isinstance(raw_files, list) or not raw_files:
        raise ValidationError("At least one file is required")

    files = []
    for index, item in enumerate(raw_files):
        if not isinstance(item, dict) or not item.get("data"):
            raise ValidationError(f"File {index} has no data")
        name = item.get("name") or f"mockup_{index + 1}.png"
        files.append(
            UploadFile(
                name=name,
                content=decode_base64_image(item["data"]),
                mime_type=item.get("mime_type", "image/png"),
            )
        )
    return files


async def upload_batch(
    files: list[UploadFile], upload_one: Callable[[UploadFile], Awaitable[dict[str, Any]]]
) -> dict[str, Any]:
    """Upload files concurrently; one failure never sinks the batch."""
    results = await asyncio.gather(*(upload_one(f) for f in files), return_exceptions=True)

    uploaded: list[dict[str, Any]] = []
    errors: list[str] = []
    for upload_file, result in zip(files, results, strict=True):
        if isinstance(result, BaseException):
            error = categorize_error(result)
            logger.warning("upload_failed", file=upload_file.name, kind=error.kind.value)
            errors.append(f"{upload_file.name}: {error.message}")
        else:
            uploaded.append(result)

    return {"uploaded": uploaded, "uploaded_count": len(uploaded), "errors": errors}


class PlatformHandler(ABC):
    """Base class for per-platform operations."""

    platform: ClassVar[str]
    operations: ClassVar[frozenset[str]]

    def supports(self, operation: str) -> bool:
        return operation in self.operations

    async def run(self, operation: str, ctx: SyncContext, params: dict[str, Any]) -> dict[str, Any]:
        if not self.supports(operation):
            raise ValidationError(f"{self.platform} does not support '{operation}'")
        method: Callable[[SyncContext, dict[str, Any]], Awaitable[dict[str, Any]]] = getattr(
            self, operation
        )
        return await method(ctx, params)

    @staticmethod
    def bearer(ctx: SyncContext) -> dict[str, str]:
        return {"Authorization": f"Bearer {ctx.access_token}"}


class ShopifyProduct(pydantic.BaseModel):
    """The subset of a Shopify product that is mirrored locally."""

    id: int | str
    title: str
    body_html: str | None = None
    vendor: str | None = None
    product_type: str | None = None
    handle: str | None = None
    tags: str | None = None
    status: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    images: list[dict[str, Any]] = []
    variants: list[dict[str, Any]] = []


class ShopifyHandler(PlatformHandler):
    platform = "shopify"
    operations = frozenset({"sync_products", "import_products", "publish_mockup"})

    def _base_url(self, ctx: SyncContext) -> str:
        shop = ctx.settings.get("shop_domain")
        if not shop:
            raise ValidationError("Shopify connection has no shop domain")
        return f"https://{shop}/admin/api/{settings.SHOPIFY_API_VERSION}"

    def _headers(self, ctx: SyncContext) -> dict[str, str]:
        return {"X-Shopify-Access-Token": ctx.access_token, "Content-Type": "application/json"}

    async def _fetch_all_products(self, ctx: SyncContext) -> list[dict[str, Any]]:
        products: list[dict[str, Any]] = []
        url: str | None = f"{self._base_url(ctx)}/products.json"
        params: dict[str, Any] | None = {"limit": 250}

        while url:
            response = await ctx.client.get(url, params=params, headers=self._headers(ctx))
            response.raise_for_status()
            products.extend(response.json().get("products", []))
            # Cursor pagination; the next link already carries its query
            url = response.links.get("next", {}).get("url")
            params = None

        return products

    async def _upsert_product(self, ctx: SyncContext, product: ShopifyProduct) -> None:
        remote_id = str(product.id)
        values = {
            "title": product.title,
            "description": product.body_html,
            "vendor": product.vendor,
            "product_type": product.product_type,
            "handle": product.handle,
            "images": product.images,
            "variants": product.variants,
            "product_metadata": {
                "tags": product.tags,
                "status": product.status,
                "created_at": product.created_at,
                "updated_at": product.updated_at,
            },
        }

        result = await ctx.db.execute(
            select(ImportedProduct).where(
                ImportedProduct.user_id == ctx.user_id,
                ImportedProduct.platform == self.platform,
                ImportedProduct.remote_id == remote_id,
            )
        )
        existing = result.scalar_one_or_none()
        if existing:
            for field, value in values.items():
                setattr(existing, field, value)
        else:
            ctx.db.add(
                ImportedProduct(
                    user_id=ctx.user_id, platform=self.platform, remote_id=remote_id, **values
                )
            )
        await ctx.db.commit()

    async def sync_products(self, ctx: SyncContext, params: dict[str, Any]) -> dict[str, Any]:
        """Mirror every store product; reports rows actually persisted."""
        raw_products = await self._fetch_all_products(ctx)
        imported = 0
        skipped = 0

        for raw in raw_products:
            try:
                await self._upsert_product(ctx, ShopifyProduct.model_validate(raw))
                imported += 1
            except (pydantic.ValidationError, SQLAlchemyError) as exc:
                await ctx.db.rollback()
                skipped += 1
                logger.warning(
                    "shopify_product_skipped",
                    user_id=ctx.user_id,
                    product_id=raw.get("id") if isinstance(raw, dict) else None,
                    error_type=type(exc).__name__,
                )

        logger.info(
            "shopify_products_synced",
            user_id=ctx.user_id,
            fetched=len(raw_products),
            imported=imported,
            skipped=skipped,
        )
        return {"products_imported": imported, "products_skipped": skipped}

    async def import_products(self, ctx: SyncContext, params: dict[str, Any]) -> dict[str, Any]:
        return await self.sync_products(ctx, params)

    async def publish_mockup(self, ctx: SyncContext, params: dict[str, Any]) -> dict[str, Any]:
        """Attach a mockup image to a store product."""
        product_id = params.get("product_id")
        if not product_id:
            raise ValidationError("product_id is required")

        if params.get("image_url"):
            image: dict[str, Any] = {"src": params["image_url"]}
        elif params.get("image_data"):
            content = decode_base64_image(params["image_data"])
            image = {"attachment": base64.b64encode(content).decode("ascii")}
        else:
            raise ValidationError("image_url or image_data is required")
        if params.get("alt"):
            image["alt"] = params["alt"]

        response = await ctx.client.post(
            f"{self._base_url(ctx)}/products/{product_id}/images.json",
            json={"image": image},
            headers=self._headers(ctx),
        )
        response.raise_for_status()
        created = response.json().get("image", {})
        return {"image_id": created.get("id"), "src": created.get("src")}


class GoogleDriveHandler(PlatformHandler):
    platform = "google-drive"
    operations = frozenset({"list_folders", "create_folder", "upload_mockups"})

    files_url = "https://www.googleapis.com/drive/v3/files"
    upload_url = "https://www.googleapis.com/upload/drive/v3/files"

    async def list_folders(self, ctx: SyncContext, params: dict[str, Any]) -> dict[str, Any]:
        parent_id = params.get("parent_id") or "root"
        query = f"mimeType='{DRIVE_FOLDER_MIME}' and trashed=false and '{parent_id}' in parents"
        response = await ctx.client.get(
            self.files_url,
            params={"q": query, "fields": "files(id,name,mimeType)", "orderBy": "name"},
            headers=self.bearer(ctx),
        )
        response.raise_for_status()
        folders = [{"id": f["id"], "name": f["name"]} for f in response.json().get("files", [])]
        return {"folders": folders}

    async def create_folder(self, ctx: SyncContext, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        if not name:
            raise ValidationError("Folder name is required")
        response = await ctx.client.post(
            self.files_url,
            params={"fields": "id,name"},
            json={
                "name": name,
                "mimeType": DRIVE_FOLDER_MIME,
                "parents": [params.get("parent_id") or "root"],
            },
            headers=self.bearer(ctx),
        )
        response.raise_for_status()
        folder = response.json()
        return {"folder": {"id": folder["id"], "name": folder["name"]}}

    async def _upload_one(self, ctx: SyncContext, folder_id: str, upload: UploadFile) -> dict[str, Any]:
        boundary = f"mockupsuite-{uuid.uuid4().hex}"
        metadata = json.dumps({"name": upload.name, "parents": [folder_id]})
        body = b"".join(
            [
                f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode(),
                metadata.encode(),
                f"\r\n--{boundary}\r\nContent-Type: {upload.mime_type}\r\n\r\n".encode(),
                upload.content,
                f"\r\n--{boundary}--".encode(),
            ]
        )
        response = await ctx.client.post(
            self.upload_url,
            params={"uploadType": "multipart", "fields": "id,name,webViewLink"},
            content=body,
            headers={
                **self.bearer(ctx),
                "Content-Type": f"multipart/related; boundary={boundary}",
            },
        )
        response.raise_for_status()
        return response.json()

    async def upload_mockups(self, ctx: SyncContext, params: dict[str, Any]) -> dict[str, Any]:
        folder_id = params.get("folder_id") or ctx.settings.get("folder_id") or "root"
        files = parse_upload_files(params)
        return await upload_batch(files, lambda f: self._upload_one(ctx, folder_id, f))


class DropboxHandler(PlatformHandler):
    platform = "dropbox"
    operations = frozenset({"list_folders", "create_folder", "upload_mockups"})

    api_url = "https://api.dropboxapi.com/2"
    content_url = "https://content.dropboxapi.com/2"

    async def list_folders(self, ctx: SyncContext, params: dict[str, Any]) -> dict[str, Any]:
        response = await ctx.client.post(
            f"{self.api_url}/files/list_folder",
            json={"path": params.get("path", "")},
            headers=self.bearer(ctx),
        )
        response.raise_for_status()
        folders = [
            {"id": entry["id"], "name": entry["name"], "path": entry.get("path_display")}
            for entry in response.json().get("entries", [])
            if entry.get(".tag") == "folder"
        ]
        return {"folders": folders}

    async def create_folder(self, ctx: SyncContext, params: dict[str, Any]) -> dict[str, Any]:
        path = params.get("path")
        if not path:
            raise ValidationError("Folder path is required")
        response = await ctx.client.post(
            f"{self.api_url}/files/create_folder_v2",
            json={"path": path, "autorename": False},
            headers=self.bearer(ctx),
        )
        response.raise_for_status()
        metadata = response.json().get("metadata", {})
        return {"folder": {"id": metadata.get("id"), "name": metadata.get("name"), "path": metadata.get("path_display")}}

    async def _upload_one(self, ctx: SyncContext, folder: str, upload: UploadFile) -> dict[str, Any]:
        api_arg = {"path": f"{folder}/{upload.name}", "mode": "add", "autorename": True}
        response = await ctx.client.post(
            f"{self.content_url}/files/upload",
            content=upload.content,
            headers={
                **self.bearer(ctx),
                "Content-Type": "application/octet-stream",
                "Dropbox-API-Arg": json.dumps(api_arg),
            },
        )
        response.raise_for_status()
        return response.json()

    async def upload_mockups(self, ctx: SyncContext, params: dict[str, Any]) -> dict[str, Any]:
        folder = (params.get("path") or ctx.settings.get("folder_path") or "/MockupSuite").rstrip("/")
        files = parse_upload_files(params)
        return await upload_batch(files, lambda f: self._upload_one(ctx, folder, f))


class FigmaHandler(PlatformHandler):
    platform = "figma"
    operations = frozenset({"list_files", "export_design"})

    api_url = "https://api.figma.com/v1"

    async def list_files(self, ctx: SyncContext, params: dict[str, Any]) -> dict[str, Any]:
        project_id = params.get("project_id") or ctx.settings.get("project_id")
        if not project_id:
            raise ValidationError("project_id is required")
        response = await ctx.client.get(
            f"{self.api_url}/projects/{project_id}/files", headers=self.bearer(ctx)
        )
        response.raise_for_status()
        files = [
            {
                "key": f["key"],
                "name": f["name"],
                "thumbnail_url": f.get("thumbnail_url"),
                "last_modified": f.get("last_modified"),
            }
            for f in response.json().get("files", [])
        ]
        return {"files": files}

    async def export_design(self, ctx: SyncContext, params: dict[str, Any]) -> dict[str, Any]:
        file_key = params.get("file_key")
        node_ids = params.get("node_ids")
        if not file_key or not node_ids:
            raise ValidationError("file_key and node_ids are required")
        response = await ctx.client.get(
            f"{self.api_url}/images/{file_key}",
            params={
                "ids": ",".join(node_ids) if isinstance(node_ids, list) else node_ids,
                "format": params.get("format", "png"),
                "scale": params.get("scale", 2),
            },
            headers=self.bearer(ctx),
        )
        response.raise_for_status()
        payload = response.json()
        if payload.get("err"):
            raise ValidationError(f"Figma export failed: {payload['err']}")
        return {"images": payload.get("images", {})}


HANDLERS: dict[str, PlatformHandler] = {
    handler.platform: handler
    for handler in (ShopifyHandler(), GoogleDriveHandler(), DropboxHandler(), FigmaHandler())
}


def get_handler(integration_id: str) -> PlatformHandler:
    handler = HANDLERS.get(integration_id)
    if handler is None:
        raise ValidationError(f"No sync operations for integration '{integration_id}'")
    return handler

