"""One-time move of legacy device-local data into the account.

Legacy data (projects with inline base64 images, a brand kit, prompt
templates) is uploaded by the client into a per-user Redis staging area and
then migrated row by row. Per-item failures, a project row that cannot be
created included, are recorded and skipped. Only an error that escapes the
run is fatal: every project created in this run is deleted again and the
result reports the failure.

Source data is never deleted by the migration itself; the client clears it
explicitly once it has seen the result.
"""

import json
import uuid

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from redis.asyncio import Redis

from app.core.errors import MockupSuiteError, ValidationError, categorize_error
from app.services.remote_store import SqlRemoteStore
from app.services.storage import ObjectStorage

logger = structlog.get_logger()

LEGACY_KEYS = ("projects", "brandKit", "promptTemplates")


class LegacyModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class LegacyProject(LegacyModel):
    id: str | None = None
    name: str
    prompt: str | None = None
    aspect_ratio: str | None = None
    saved_images: list[str] = Field(default_factory=list)


class LegacyBrandKit(LegacyModel):
    logo: str | None = None
    use_watermark: bool = False
    colors: list[str] = Field(default_factory=list)


class LegacyTemplate(LegacyModel):
    id: str | None = None
    text: str


class LegacyData(LegacyModel):
    projects: list[LegacyProject] = Field(default_factory=list)
    brand_kit: LegacyBrandKit | None = None
    prompt_templates: list[LegacyTemplate] = Field(default_factory=list)


class MigrationResult(BaseModel):
    success: bool = False
    projects_migrated: int = 0
    mockups_migrated: int = 0
    brand_kit_migrated: bool = False
    templates_migrated: int = 0
    errors: list[str] = Field(default_factory=list)


class LegacyLocalStore:
    """Per-user staging area holding the device's legacy local data."""

    def __init__(self, redis: Redis, user_id: int) -> None:
        self.redis = redis
        self.user_id = user_id

    def _key(self, name: str) -> str:
        return f"legacy:{self.user_id}:{name}"

    async def has_legacy_data(self) -> bool:
        return bool(await self.redis.exists(*(self._key(name) for name in LEGACY_KEYS)))

    async def save(self, data: LegacyData) -> None:
        dumped = data.model_dump(by_alias=True)
        for name in LEGACY_KEYS:
            if dumped.get(name):
                await self.redis.set(self._key(name), json.dumps(dumped[name]))

    async def _read(self, name: str):
        raw = await self.redis.get(self._key(name))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            # A corrupt key is skipped, the other categories still migrate
            logger.warning("legacy_data_unreadable", user_id=self.user_id, key=name)
            return None

    async def load(self) -> LegacyData:
        data = LegacyData()
        projects = await self._read("projects")
        if projects:
            try:
                data.projects = [LegacyProject.model_validate(item) for item in projects]
            except PydanticValidationError:
                logger.warning("legacy_projects_invalid", user_id=self.user_id)
        brand_kit = await self._read("brandKit")
        if brand_kit:
            try:
                data.brand_kit = LegacyBrandKit.model_validate(brand_kit)
            except PydanticValidationError:
                logger.warning("legacy_brand_kit_invalid", user_id=self.user_id)
        templates = await self._read("promptTemplates")
        if templates:
            try:
                data.prompt_templates = [LegacyTemplate.model_validate(item) for item in templates]
            except PydanticValidationError:
                logger.warning("legacy_templates_invalid", user_id=self.user_id)
        return data

    async def backup(self) -> str:
        return (await self.load()).model_dump_json(by_alias=True)

    async def restore(self, backup: str) -> None:
        try:
            data = LegacyData.model_validate_json(backup)
        except PydanticValidationError as exc:
            raise ValidationError("Invalid legacy backup", details={"errors": exc.error_count()}) from exc
        await self.save(data)

    async def clear(self) -> None:
        await self.redis.delete(*(self._key(name) for name in LEGACY_KEYS))


class MigrationService:
    def __init__(self, remote: SqlRemoteStore, storage: ObjectStorage, legacy: LegacyLocalStore) -> None:
        self.remote = remote
        self.storage = storage
        self.legacy = legacy

    async def migrate(self, user_id: int) -> MigrationResult:
        result = MigrationResult()
        data = await self.legacy.load()
        created_projects: list[uuid.UUID] = []

        logger.info(
            "migration_started",
            user_id=user_id,
            projects=len(data.projects),
            has_brand_kit=data.brand_kit is not None,
            templates=len(data.prompt_templates),
        )

        try:
            for project in data.projects:
                await self._migrate_project(user_id, project, result, created_projects)
            if data.brand_kit is not None:
                await self._migrate_brand_kit(user_id, data.brand_kit, result)
            for template in data.prompt_templates:
                await self._migrate_template(user_id, template, result)
        except Exception as exc:
            error = categorize_error(exc)
            result.errors.append(f"Critical migration error: {error.message}")
            await self.remote.rollback()
            await self._rollback(user_id, created_projects, result)
            result.projects_migrated = 0
            result.mockups_migrated = 0
            result.success = False
            logger.error(
                "migration_failed",
                user_id=user_id,
                kind=error.kind.value,
                error_type=type(exc).__name__,
                rolled_back=len(created_projects),
            )
            return result

        result.success = (
            result.projects_migrated > 0 or result.brand_kit_migrated or result.templates_migrated > 0
        )
        logger.info(
            "migration_finished",
            user_id=user_id,
            success=result.success,
            projects=result.projects_migrated,
            mockups=result.mockups_migrated,
            templates=result.templates_migrated,
            errors=len(result.errors),
        )
        return result

    async def _migrate_project(
        self,
        user_id: int,
        legacy: LegacyProject,
        result: MigrationResult,
        created_projects: list[uuid.UUID],
    ) -> None:
        try:
            project = await self.remote.create_project(
                user_id,
                {"name": legacy.name, "prompt": legacy.prompt, "aspect_ratio": legacy.aspect_ratio},
            )
        except MockupSuiteError as exc:
            result.errors.append(f'Failed to create project "{legacy.name}": {exc.message}')
            logger.warning("migration_project_failed", user_id=user_id, kind=exc.kind.value)
            return

        project_id = project.id
        created_projects.append(project_id)
        result.projects_migrated += 1

        for index, image in enumerate(legacy.saved_images):
            try:
                stored = await self.storage.upload_image_with_thumbnail(
                    user_id, image, f"migrated_mockup_{index}.png", "mockups"
                )
                await self.remote.create_mockup(
                    user_id,
                    project_id,
                    {"image_path": stored.path, "thumbnail_path": stored.thumbnail_path},
                )
            except Exception as exc:
                error = categorize_error(exc)
                result.errors.append(f'Failed to migrate mockup {index + 1} of "{legacy.name}": {error.message}')
                logger.warning("migration_mockup_failed", user_id=user_id, kind=error.kind.value)
                continue
            result.mockups_migrated += 1

    async def _migrate_brand_kit(self, user_id: int, legacy: LegacyBrandKit, result: MigrationResult) -> None:
        logo_path = None
        if legacy.logo:
            try:
                stored = await self.storage.upload_image_with_thumbnail(
                    user_id, legacy.logo, "brand_logo.png", "logos"
                )
                logo_path = stored.path
            except Exception as exc:
                error = categorize_error(exc)
                result.errors.append(f"Failed to upload brand kit logo: {error.message}")
                logger.warning("migration_logo_failed", user_id=user_id, kind=error.kind.value)

        try:
            await self.remote.upsert_brand_kit(
                user_id,
                {"logo_path": logo_path, "use_watermark": legacy.use_watermark, "colors": legacy.colors},
            )
        except MockupSuiteError as exc:
            result.errors.append(f"Failed to migrate brand kit: {exc.message}")
            return
        result.brand_kit_migrated = True

    async def _migrate_template(self, user_id: int, legacy: LegacyTemplate, result: MigrationResult) -> None:
        try:
            await self.remote.create_template(user_id, {"text": legacy.text})
        except MockupSuiteError as exc:
            result.errors.append(f"Failed to migrate prompt template: {exc.message}")
            return
        result.templates_migrated += 1

    async def _rollback(self, user_id: int, created_projects: list[uuid.UUID], result: MigrationResult) -> None:
        """Delete only the projects this run created; mockups cascade."""
        for project_id in created_projects:
            try:
                await self.remote.delete_project(user_id, project_id)
            except Exception as exc:
                error = categorize_error(exc)
                await self.remote.rollback()
                result.errors.append(f"Rollback failed for project {project_id}: {error.message}")
                logger.error("migration_rollback_failed", user_id=user_id, project_id=str(project_id))
