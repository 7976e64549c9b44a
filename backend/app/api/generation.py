"""API endpoints for AI generation (mockups, background removal, video)."""

import uuid

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from app.api.deps import DbSession, Gate, Handoff, Provider, Storage
from app.core.auth import CurrentUser
from app.core.limiter import limiter
from app.services.generation import GenerationResult, GenerationService
from app.services.image_processing import encode_base64_image

router = APIRouter(prefix="/generation", tags=["generation"])
logger = structlog.get_logger()


class MockupRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    image: str | None = Field(
        None, description="Base64 or data URL; defaults to the image handed off by the uploader"
    )
    mime_type: str = "image/png"
    project_id: uuid.UUID | None = Field(None, description="Save results into this project")


class BackgroundRemovalRequest(BaseModel):
    image: str
    mime_type: str = "image/png"


class VideoRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    image: str | None = None
    mime_type: str = "image/png"
    aspect_ratio: str = Field("16:9", pattern=r"^(16:9|9:16|1:1)$")


class SavedMockup(BaseModel):
    id: uuid.UUID
    image_path: str
    thumbnail_path: str | None


class GenerationResponse(BaseModel):
    operation: str
    items: list[str] = Field(..., description="Data URLs, in provider order")
    saved: list[SavedMockup] = Field(default_factory=list)


def _to_response(result: GenerationResult, saved: list[SavedMockup] | None = None) -> GenerationResponse:
    return GenerationResponse(
        operation=result.operation.value,
        items=[encode_base64_image(item, result.mime_type) for item in result.items],
        saved=saved or [],
    )


@router.post("/mockups", response_model=GenerationResponse)
@limiter.limit("30/minute")
async def generate_mockups(
    request: Request,  # Required for rate limiter
    body: MockupRequest,
    current_user: CurrentUser,
    db: DbSession,
    gate: Gate,
    provider: Provider,
    storage: Storage,
    handoff: Handoff,
) -> GenerationResponse:
    # A failed ledger write rolls the session back and expires current_user
    user_id = current_user.id
    service = GenerationService(db, provider, gate, storage=storage)
    image = await service.resolve_source_image(user_id, body.image, handoff)
    result = await service.generate_mockups(user_id, body.prompt, image, body.mime_type)
    if body.image is None:
        await service.consume_handed_off_image(handoff)

    saved: list[SavedMockup] = []
    if body.project_id is not None:
        mockups = await service.save_to_project(user_id, body.project_id, result.items, body.prompt)
        saved = [
            SavedMockup(id=m.id, image_path=m.image_path, thumbnail_path=m.thumbnail_path) for m in mockups
        ]
    return _to_response(result, saved)


@router.post("/background-removal", response_model=GenerationResponse)
@limiter.limit("30/minute")
async def remove_background(
    request: Request,  # Required for rate limiter
    body: BackgroundRemovalRequest,
    current_user: CurrentUser,
    db: DbSession,
    gate: Gate,
    provider: Provider,
) -> GenerationResponse:
    user_id = current_user.id
    service = GenerationService(db, provider, gate)
    image = await service.resolve_source_image(user_id, body.image, None)
    return _to_response(await service.remove_background(user_id, image, body.mime_type))


@router.post("/video", response_model=GenerationResponse)
@limiter.limit("10/minute")
async def generate_video(
    request: Request,  # Required for rate limiter
    body: VideoRequest,
    current_user: CurrentUser,
    db: DbSession,
    gate: Gate,
    provider: Provider,
    handoff: Handoff,
) -> GenerationResponse:
    user_id = current_user.id
    service = GenerationService(db, provider, gate)
    image = await service.resolve_source_image(user_id, body.image, handoff)
    result = await service.generate_video(user_id, body.prompt, image, body.mime_type, body.aspect_ratio)
    if body.image is None:
        await service.consume_handed_off_image(handoff)
    return _to_response(result)
