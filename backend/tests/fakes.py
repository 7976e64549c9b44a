"""In-memory stand-ins for the generation provider, object storage and payment gateway."""

import asyncio
import io
import uuid
from typing import Any

from PIL import Image

from app.core.errors import StorageError
from app.services.image_processing import decode_base64_image
from app.services.payments import CheckoutSession, PaymentType, PaymentVerification
from app.services.storage import StoredImage


def png_bytes(size: tuple[int, int] = (64, 64), color: tuple[int, ...] = (200, 30, 30, 255)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeProvider:
    """Returns canned images; ``error`` makes every call raise it."""

    def __init__(self, images: list[bytes] | None = None) -> None:
        self.images = images if images is not None else [png_bytes((1024, 768))]
        self.video = b"\x00\x00\x00\x18ftypmp42"
        self.error: Exception | None = None
        self.video_delay: float = 0.0
        self.calls: list[str] = []

    async def generate_images(self, prompt: str, image: bytes, mime_type: str) -> list[bytes]:
        self.calls.append("generate_images")
        if self.error is not None:
            raise self.error
        return list(self.images)

    async def remove_background(self, image: bytes, mime_type: str) -> bytes:
        self.calls.append("remove_background")
        if self.error is not None:
            raise self.error
        return self.images[0]

    async def generate_video(self, prompt: str, image: bytes, mime_type: str, aspect_ratio: str) -> bytes:
        self.calls.append("generate_video")
        if self.video_delay:
            await asyncio.sleep(self.video_delay)
        if self.error is not None:
            raise self.error
        return self.video


class FakeStorage:
    """Dict-backed object store; file names in ``fail_names`` fail to upload."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_names: set[str] = set()
        self.fail_downloads = False

    async def upload(self, path: str, content: bytes, content_type: str = "image/png") -> str:
        self.objects[path] = content
        return path

    async def upload_image_with_thumbnail(
        self, user_id: int, image: str | bytes, file_name: str, folder: str = "mockups"
    ) -> StoredImage:
        if file_name in self.fail_names:
            raise StorageError(f"Storage upload failed for {file_name}")
        content = decode_base64_image(image) if isinstance(image, str) else image
        path = f"{user_id}/{folder}/{uuid.uuid4().hex}-{file_name}"
        self.objects[path] = content
        return StoredImage(path=path, thumbnail_path=None)

    async def download(self, path: str) -> bytes:
        if self.fail_downloads or path not in self.objects:
            raise StorageError("Storage download failed")
        return self.objects[path]

    async def signed_url(self, path: str) -> str:
        return f"https://storage.test/signed/{path}"

    async def delete(self, *paths: str) -> None:
        for path in paths:
            self.objects.pop(path, None)


class FakeGateway:
    """Payment gateway that succeeds unless told otherwise."""

    def __init__(self) -> None:
        self.verification = PaymentVerification(success=True, status="success", payment_id="pay-1")
        self.verify_errors: list[Exception] = []
        self.initialized: list[dict[str, Any]] = []
        self.verified: list[str] = []

    async def initialize(
        self, user_id: int, payment_type: PaymentType, item_id: str, amount: int, conversation_id: str
    ) -> CheckoutSession:
        self.initialized.append(
            {"user_id": user_id, "type": payment_type, "item_id": item_id, "amount": amount}
        )
        return CheckoutSession(
            token=f"tok-{len(self.initialized)}",
            payment_page_url="https://checkout.test/pay",
            payment_type=payment_type,
            item_id=item_id,
            amount=amount,
        )

    async def verify(self, token: str, conversation_id: str) -> PaymentVerification:
        self.verified.append(token)
        if self.verify_errors:
            raise self.verify_errors.pop(0)
        return self.verification
