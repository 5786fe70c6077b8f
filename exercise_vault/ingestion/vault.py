from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .config import VaultConfig
from .extractor import Extractor, GeminiExtractor
from .models import Exercise, ExerciseCandidate, ExerciseSummary, IngestionReport, RasterizedDocument
from .pipeline import IngestionPipeline
from .rasterizer import Rasterizer
from .repository import CourseTree, ExerciseRepository, SqlAlchemyExerciseRepository
from .storage import LocalAssetStore, StoragePaths

logger = logging.getLogger(__name__)


class ExerciseVault:
    """
    The operation surface callers (a desktop shell, a CLI) talk to. Each method
    is one independent unit of work; no state is shared between calls apart
    from what is persisted.
    """

    def __init__(
        self,
        repository: ExerciseRepository,
        assets: LocalAssetStore,
        rasterizer: Rasterizer,
        extractor: Extractor,
    ):
        self.repo = repository
        self.assets = assets
        self.rasterizer = rasterizer
        self.extractor = extractor
        self.pipeline = IngestionPipeline(repository, assets, rasterizer, extractor)

    @classmethod
    def from_config(cls, config: VaultConfig, extractor: Optional[Extractor] = None) -> "ExerciseVault":
        config.storage_root.mkdir(parents=True, exist_ok=True)
        assets = LocalAssetStore(StoragePaths(config.storage_root))
        assets.ensure_images_dir()
        repo = SqlAlchemyExerciseRepository(config.database_url, asset_store=assets)
        logger.info("Exercise vault at %s (schema v%d)", config.storage_root, repo.schema_version)
        return cls(
            repository=repo,
            assets=assets,
            rasterizer=Rasterizer.from_config(config),
            extractor=extractor or GeminiExtractor.from_config(config),
        )

    def _resolve_api_key(self, api_key: Optional[str]) -> str:
        key = api_key or self.repo.get_api_key()
        if not key:
            raise ValueError("API key not configured")
        return key

    # Ingestion
    def rasterize(self, document_path: Union[str, Path]) -> RasterizedDocument:
        return self.rasterizer.rasterize(document_path)

    async def extract_page(
        self,
        page_image: Optional[str] = None,
        page_image_path: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> List[ExerciseCandidate]:
        return await self.extractor.extract_page(
            page_image=page_image,
            page_image_path=page_image_path,
            api_key=self._resolve_api_key(api_key),
        )

    async def ingest(
        self,
        document_path: Union[str, Path],
        course: str,
        week_number: int,
        api_key: Optional[str] = None,
        replace_week: bool = False,
    ) -> IngestionReport:
        return await self.pipeline.ingest(
            document_path,
            course,
            week_number,
            self._resolve_api_key(api_key),
            replace_week=replace_week,
        )

    # Hierarchy
    def replace_week_exercises(self, course: str, week_number: int, exercises: Iterable[Exercise]) -> None:
        self.repo.replace_week_exercises(course, week_number, exercises)

    def upsert_exercise(self, exercise: Exercise) -> None:
        self.repo.upsert_exercise(exercise)

    def update_exercise(
        self,
        exercise_id: str,
        name: Optional[str] = None,
        tags: Optional[List[str]] = None,
        notes: Optional[str] = None,
    ) -> None:
        self.repo.update_exercise(exercise_id, name=name, tags=tags, notes=notes)

    def list_all_courses(self) -> Dict[str, CourseTree]:
        return self.repo.list_all()

    def get_course(self, course: str) -> Optional[CourseTree]:
        return self.repo.get_course(course)

    def delete_exercise(self, exercise_id: str) -> None:
        self.repo.delete_exercise(exercise_id)

    def delete_week(self, course: str, week_number: int) -> None:
        self.repo.delete_week(course, week_number)

    def delete_course(self, course: str) -> None:
        self.repo.delete_course(course)

    def rename_course(self, old_name: str, new_name: str) -> None:
        self.repo.rename_course(old_name, new_name)

    def search(self, query: str) -> List[ExerciseSummary]:
        return self.repo.search(query)

    def filter_by_tags(self, tags: Iterable[str]) -> List[ExerciseSummary]:
        return self.repo.filter_by_tags(tags)

    def list_tags(self) -> List[str]:
        return self.repo.list_tags()

    # Assets
    def save_asset(self, encoded: str) -> str:
        return self.assets.save(encoded)

    def read_asset(self, ref: str) -> str:
        return self.assets.read(ref)

    # Settings
    def save_api_key(self, api_key: str) -> None:
        self.repo.save_api_key(api_key)

    def get_api_key(self) -> Optional[str]:
        return self.repo.get_api_key()
