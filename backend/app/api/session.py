"""API endpoints for per-user handoff keys (current view, pending upload)."""

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from app.api.deps import Handoff
from app.core.handoff import HandoffKey

router = APIRouter(prefix="/session", tags=["session"])


class ViewBody(BaseModel):
    view: str | None = Field(None, max_length=100)


class PendingUploadBody(BaseModel):
    image: str = Field(..., description="Base64 or data URL of the uploaded image")


@router.put("/view", status_code=status.HTTP_204_NO_CONTENT)
async def remember_view(body: ViewBody, handoff: Handoff) -> None:
    await handoff.write(HandoffKey.CURRENT_VIEW, body.view, component="navigation")


@router.get("/view", response_model=ViewBody)
async def restore_view(handoff: Handoff) -> ViewBody:
    """Read-and-clear the view to restore after a reload."""
    return ViewBody(view=await handoff.consume(HandoffKey.CURRENT_VIEW, component="app_shell"))


@router.put("/pending-upload", status_code=status.HTTP_204_NO_CONTENT)
async def hand_off_upload(body: PendingUploadBody, handoff: Handoff) -> None:
    """Hand an uploaded image to the next generation request."""
    await handoff.write(HandoffKey.PENDING_UPLOADED_IMAGE, body.image, component="uploader")
