"""AI generation behind the quota gate.

Every operation follows the same sequence: pre-flight gate check, provider
call, post-processing, then a best-effort decrement. Output the provider
already produced is never withheld because the decrement failed.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Protocol

import structlog
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    AuthError,
    ContentPolicyBlockedError,
    GenerationTimeoutError,
    MockupSuiteError,
    NetworkError,
    ValidationError,
    categorize_error,
)
from app.core.handoff import HandoffKey, HandoffStore
from app.models.brand_kit import BrandKit
from app.models.project import Mockup, Project
from app.services.image_processing import (
    PostProcessOptions,
    decode_base64_image,
    process_batch,
)
from app.services.plans import OperationKind
from app.services.quota import QuotaGate
from app.services.storage import ObjectStorage

logger = structlog.get_logger()

BLOCKED_FINISH_REASONS = frozenset(
    {"SAFETY", "RECITATION", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "IMAGE_SAFETY"}
)

BACKGROUND_REMOVAL_PROMPT = (
    "Remove the background from this image completely. Keep only the main subject/object "
    "in the foreground. Make the background fully transparent. Return only the image with "
    "transparent background, no text or explanations."
)


class GenerationProvider(Protocol):
    async def generate_images(self, prompt: str, image: bytes, mime_type: str) -> list[bytes]: ...

    async def remove_background(self, image: bytes, mime_type: str) -> bytes: ...

    async def generate_video(
        self, prompt: str, image: bytes, mime_type: str, aspect_ratio: str
    ) -> bytes: ...


def _finish_reason_name(candidate: types.Candidate) -> str | None:
    reason = candidate.finish_reason
    if reason is None:
        return None
    return getattr(reason, "name", str(reason))


def _raise_for_api_error(exc: genai_errors.APIError) -> None:
    code = exc.code or 0
    message = exc.message or str(exc)
    if code in (401, 403):
        raise AuthError("Generation provider rejected the API key") from exc
    if code == 429 or code >= 500:
        raise NetworkError(message, details={"status_code": code}) from exc
    if code == 400 and "safety" in message.lower():
        raise ContentPolicyBlockedError(message) from exc
    raise ValidationError(message, details={"status_code": code}) from exc


class GeminiProvider:
    """Image, background removal and video generation via google-genai."""

    def __init__(self, client: genai.Client | None = None, api_key: str | None = None) -> None:
        self.client = client or genai.Client(api_key=api_key or settings.GEMINI_API_KEY)

    async def _image_call(self, prompt: str, image: bytes, mime_type: str) -> list[bytes]:
        try:
            response = await self.client.aio.models.generate_content(
                model=settings.GEMINI_IMAGE_MODEL,
                contents=[
                    types.Part.from_bytes(data=image, mime_type=mime_type),
                    types.Part.from_text(text=prompt),
                ],
                config=types.GenerateContentConfig(response_modalities=["IMAGE"]),
            )
        except genai_errors.APIError as exc:
            _raise_for_api_error(exc)

        feedback = response.prompt_feedback
        if feedback is not None and feedback.block_reason:
            raise ContentPolicyBlockedError(details={"block_reason": str(feedback.block_reason)})

        if not response.candidates:
            raise MockupSuiteError("The generation provider returned no candidates")

        candidate = response.candidates[0]
        reason = _finish_reason_name(candidate)
        if reason in BLOCKED_FINISH_REASONS:
            raise ContentPolicyBlockedError(details={"finish_reason": reason})
        if reason == "NO_IMAGE":
            raise ValidationError("No image could be generated; try a clearer image or another prompt")
        if reason not in (None, "STOP", "FINISH_REASON_UNSPECIFIED"):
            raise MockupSuiteError(f"Generation stopped: {reason}", details={"finish_reason": reason})

        parts = candidate.content.parts if candidate.content and candidate.content.parts else []
        images = [part.inline_data.data for part in parts if part.inline_data and part.inline_data.data]
        if not images:
            text = (response.text or "").strip()
            raise ValidationError(
                f"Model returned text instead of an image: {text}" if text else "No image was generated"
            )
        return images

    async def generate_images(self, prompt: str, image: bytes, mime_type: str) -> list[bytes]:
        return await self._image_call(prompt, image, mime_type)

    async def remove_background(self, image: bytes, mime_type: str) -> bytes:
        images = await self._image_call(BACKGROUND_REMOVAL_PROMPT, image, mime_type)
        return images[0]

    async def generate_video(
        self, prompt: str, image: bytes, mime_type: str, aspect_ratio: str
    ) -> bytes:
        """Start a long-running video job and poll it until done."""
        try:
            operation = await self.client.aio.models.generate_videos(
                model=settings.GEMINI_VIDEO_MODEL,
                prompt=prompt,
                image=types.Image(image_bytes=image, mime_type=mime_type),
                config=types.GenerateVideosConfig(aspect_ratio=aspect_ratio, number_of_videos=1),
            )
            while not operation.done:
                await asyncio.sleep(settings.VIDEO_POLL_INTERVAL)
                operation = await self.client.aio.operations.get(operation)
        except genai_errors.APIError as exc:
            _raise_for_api_error(exc)

        if operation.error:
            raise MockupSuiteError("Video generation failed", details={"error": operation.error})

        result = operation.response or operation.result
        videos = result.generated_videos if result else None
        if not videos:
            if result is not None and result.rai_media_filtered_count:
                raise ContentPolicyBlockedError(details={"reasons": result.rai_media_filtered_reasons})
            raise MockupSuiteError("No video was generated")

        video = videos[0].video
        if video.video_bytes:
            return video.video_bytes
        return await self.client.aio.files.download(file=video)


@dataclass
class GenerationResult:
    operation: OperationKind
    items: list[bytes] = field(default_factory=list)
    mime_type: str = "image/png"


class GenerationService:
    """Gate, call, post-process, charge."""

    def __init__(
        self,
        db: AsyncSession,
        provider: GenerationProvider,
        gate: QuotaGate,
        *,
        storage: ObjectStorage | None = None,
        video_timeout: float | None = None,
    ) -> None:
        self.db = db
        self.provider = provider
        self.gate = gate
        self.storage = storage
        self.video_timeout = video_timeout or settings.VIDEO_GENERATION_TIMEOUT

    async def _brand_logo(self, user_id: int) -> bytes | None:
        result = await self.db.execute(select(BrandKit).where(BrandKit.user_id == user_id))
        brand_kit = result.scalar_one_or_none()
        if brand_kit is None or not brand_kit.use_watermark or not brand_kit.logo_path:
            return None
        if self.storage is None:
            return None
        try:
            return await self.storage.download(brand_kit.logo_path)
        except MockupSuiteError as exc:
            # Deliver without the logo rather than failing the generation
            logger.warning("brand_logo_unavailable", user_id=user_id, kind=exc.kind.value)
            return None

    async def post_process_options(self, user_id: int, *, with_logo: bool = True) -> PostProcessOptions:
        plan = await self.gate.user_plan(user_id)
        return PostProcessOptions(
            free_tier=plan.has_watermark,
            max_dimension=min(plan.max_resolution, settings.FREE_TIER_MAX_DIMENSION),
            watermark_text=settings.WATERMARK_TEXT,
            logo=await self._brand_logo(user_id) if with_logo else None,
        )

    async def _charge(self, user_id: int, kind: OperationKind) -> None:
        try:
            await self.gate.decrement(user_id, kind, 1)
        except Exception as exc:
            logger.error(
                "quota_decrement_failed",
                user_id=user_id,
                operation=kind.value,
                error=str(exc),
            )

    async def resolve_source_image(
        self, user_id: int, image: str | None, handoff: HandoffStore | None
    ) -> bytes:
        """Use the request image, else the one handed off by the uploader.

        The handoff is only read here; ``consume_handed_off_image`` clears it
        once the operation succeeded, so a denied request keeps the upload.
        """
        if image is None and handoff is not None:
            image = await handoff.peek(HandoffKey.PENDING_UPLOADED_IMAGE)
        if not image:
            raise ValidationError("A source image is required")
        return decode_base64_image(image)

    async def consume_handed_off_image(self, handoff: HandoffStore) -> None:
        await handoff.consume(HandoffKey.PENDING_UPLOADED_IMAGE, component="generator")

    async def generate_mockups(
        self, user_id: int, prompt: str, image: bytes, mime_type: str = "image/png"
    ) -> GenerationResult:
        kind = OperationKind.IMAGE_GENERATION
        await self.gate.ensure_can_perform(user_id, kind)

        raw = await self.provider.generate_images(prompt, image, mime_type)
        options = await self.post_process_options(user_id)
        processed = await process_batch(raw, options)

        await self._charge(user_id, kind)
        logger.info("mockups_generated", user_id=user_id, count=len(processed), free_tier=options.free_tier)
        return GenerationResult(kind, processed)

    async def remove_background(
        self, user_id: int, image: bytes, mime_type: str = "image/png"
    ) -> GenerationResult:
        kind = OperationKind.BACKGROUND_REMOVAL
        await self.gate.ensure_can_perform(user_id, kind)

        raw = await self.provider.remove_background(image, mime_type)
        # Cut-outs get the free-tier treatment but never the brand logo
        options = await self.post_process_options(user_id, with_logo=False)
        processed = await process_batch([raw], options)

        await self._charge(user_id, kind)
        logger.info("background_removed", user_id=user_id, free_tier=options.free_tier)
        return GenerationResult(kind, processed)

    async def generate_video(
        self,
        user_id: int,
        prompt: str,
        image: bytes,
        mime_type: str = "image/png",
        aspect_ratio: str = "16:9",
    ) -> GenerationResult:
        kind = OperationKind.VIDEO_GENERATION
        await self.gate.ensure_can_perform(user_id, kind)

        try:
            video = await asyncio.wait_for(
                self.provider.generate_video(prompt, image, mime_type, aspect_ratio),
                timeout=self.video_timeout,
            )
        except TimeoutError as exc:
            logger.warning("video_generation_timeout", user_id=user_id, timeout=self.video_timeout)
            raise GenerationTimeoutError(details={"timeout_seconds": self.video_timeout}) from exc

        await self._charge(user_id, kind)
        logger.info("video_generated", user_id=user_id, size=len(video))
        return GenerationResult(kind, [video], "video/mp4")

    async def save_to_project(
        self, user_id: int, project_id, images: list[bytes], prompt: str | None = None
    ) -> list[Mockup]:
        """Upload images with thumbnails and persist one mockup row each."""
        if self.storage is None:
            raise ValidationError("Object storage is not configured")

        project = await self.db.get(Project, project_id)
        if project is None or project.user_id != user_id:
            raise ValidationError("Project not found")

        stored = await asyncio.gather(
            *(
                self.storage.upload_image_with_thumbnail(user_id, content, f"mockup-{index}.png")
                for index, content in enumerate(images)
            )
        )
        mockups = [
            Mockup(
                project_id=project_id,
                user_id=user_id,
                image_path=item.path,
                thumbnail_path=item.thumbnail_path,
                prompt=prompt,
            )
            for item in stored
        ]
        self.db.add_all(mockups)
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.warning("mockup_save_failed", user_id=user_id, error=str(exc))
            raise categorize_error(exc) from exc
        return mockups
