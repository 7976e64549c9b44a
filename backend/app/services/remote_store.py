"""Row-level writes for user content: projects, mockups, brand kits, templates.

Every write commits on its own. Callers (the offline queue, the migration)
rely on per-row atomicity only; nothing here spans rows in one transaction.
"""

import uuid
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ValidationError, categorize_error
from app.models.brand_kit import BrandKit
from app.models.project import Mockup, Project
from app.models.prompt_template import PromptTemplate

logger = structlog.get_logger()

PROJECT_FIELDS = ("name", "prompt", "aspect_ratio")
BRAND_KIT_FIELDS = ("logo_path", "use_watermark", "colors")


def parse_uuid(value: str | uuid.UUID, what: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {what}: {value}") from None


def _require(payload: dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value in (None, ""):
        raise ValidationError(f"'{key}' is required")
    return value


class SqlRemoteStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def rollback(self) -> None:
        await self.db.rollback()

    async def _commit(self, operation: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.warning("remote_write_failed", operation=operation, error=str(exc))
            raise categorize_error(exc) from exc

    async def _owned_project(self, user_id: int, project_id: str | uuid.UUID) -> Project:
        project = await self.db.get(Project, parse_uuid(project_id, "project id"))
        if project is None or project.user_id != user_id:
            raise ValidationError(f"Project {project_id} not found")
        return project

    # Projects

    async def create_project(self, user_id: int, payload: dict[str, Any]) -> Project:
        project = Project(
            user_id=user_id,
            name=_require(payload, "name"),
            prompt=payload.get("prompt"),
            aspect_ratio=payload.get("aspect_ratio"),
        )
        self.db.add(project)
        await self._commit("create_project")
        return project

    async def update_project(self, user_id: int, project_id: str, payload: dict[str, Any]) -> Project:
        project = await self._owned_project(user_id, project_id)
        for key in PROJECT_FIELDS:
            if key in payload:
                setattr(project, key, payload[key])
        await self._commit("update_project")
        return project

    async def delete_project(self, user_id: int, project_id: str | uuid.UUID) -> None:
        """Delete a project; its mockups go with it."""
        pid = parse_uuid(project_id, "project id")
        await self.db.execute(delete(Mockup).where(Mockup.project_id == pid, Mockup.user_id == user_id))
        await self.db.execute(delete(Project).where(Project.id == pid, Project.user_id == user_id))
        await self._commit("delete_project")

    # Mockups

    async def create_mockup(self, user_id: int, project_id: str | uuid.UUID, payload: dict[str, Any]) -> Mockup:
        project = await self._owned_project(user_id, project_id)
        mockup = Mockup(
            project_id=project.id,
            user_id=user_id,
            image_path=_require(payload, "image_path"),
            thumbnail_path=payload.get("thumbnail_path"),
            prompt=payload.get("prompt"),
        )
        self.db.add(mockup)
        await self._commit("create_mockup")
        return mockup

    async def delete_mockup(self, user_id: int, mockup_id: str) -> None:
        await self.db.execute(
            delete(Mockup).where(Mockup.id == parse_uuid(mockup_id, "mockup id"), Mockup.user_id == user_id)
        )
        await self._commit("delete_mockup")

    # Brand kit

    async def upsert_brand_kit(self, user_id: int, payload: dict[str, Any]) -> BrandKit:
        result = await self.db.execute(select(BrandKit).where(BrandKit.user_id == user_id))
        brand_kit = result.scalar_one_or_none()
        if brand_kit is None:
            brand_kit = BrandKit(user_id=user_id, colors=[])
            self.db.add(brand_kit)
        for key in BRAND_KIT_FIELDS:
            if key in payload:
                setattr(brand_kit, key, payload[key])
        await self._commit("upsert_brand_kit")
        return brand_kit

    async def delete_brand_kit(self, user_id: int) -> None:
        await self.db.execute(delete(BrandKit).where(BrandKit.user_id == user_id))
        await self._commit("delete_brand_kit")

    # Prompt templates

    async def create_template(self, user_id: int, payload: dict[str, Any]) -> PromptTemplate:
        template = PromptTemplate(user_id=user_id, text=_require(payload, "text"))
        self.db.add(template)
        await self._commit("create_template")
        return template

    async def update_template(self, user_id: int, template_id: str, payload: dict[str, Any]) -> PromptTemplate:
        template = await self.db.get(PromptTemplate, parse_uuid(template_id, "template id"))
        if template is None or template.user_id != user_id:
            raise ValidationError(f"Template {template_id} not found")
        template.text = _require(payload, "text")
        await self._commit("update_template")
        return template

    async def delete_template(self, user_id: int, template_id: str) -> None:
        await self.db.execute(
            delete(PromptTemplate).where(
                PromptTemplate.id == parse_uuid(template_id, "template id"),
                PromptTemplate.user_id == user_id,
            )
        )
        await self._commit("delete_template")
