from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Union

from .errors import AssetIOError, IntegrityViolation, SchemaMismatch, UpstreamServiceError
from .extractor import Extractor
from .models import Exercise, IngestionReport, PageFailure, PageImage
from .rasterizer import Rasterizer
from .repository import ExerciseRepository
from .storage import LocalAssetStore

logger = logging.getLogger(__name__)

PAGE_SCOPED_ERRORS = (UpstreamServiceError, SchemaMismatch, AssetIOError)


class IngestionPipeline:
    """
    Drives a document through rasterize -> extract -> persist.
    The pipeline is stateless; state lives in the repository and asset store.

    Failures are page-scoped: a page whose extraction fails is recorded in the
    report and skipped, pages already committed stay committed. With
    ``replace_week=True`` the whole document is committed at the end through a
    single week replacement, and only when every page was rendered and
    extracted. Placeholder or missing pages leave the week untouched.
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

    async def ingest(
        self,
        document_path: Union[str, Path],
        course: str,
        week_number: int,
        api_key: str,
        replace_week: bool = False,
    ) -> IngestionReport:
        document = self.rasterizer.rasterize(document_path)
        report = IngestionReport(
            source_path=document.source_path,
            course=course,
            week_number=week_number,
            page_count=document.page_count,
            warnings=list(document.warnings),
        )
        logger.info(
            "Ingesting %s into %r week %s (%d/%d pages rendered)",
            document.source_path,
            course,
            week_number,
            len(document.pages),
            document.page_count,
        )

        pending: List[Exercise] = []
        for page in document.pages:
            if page.placeholder:
                report.placeholder_pages.append(page.page_number)
                continue
            exercises = await self._process_page(page, course, week_number, api_key, report)
            if exercises is None:
                continue
            if replace_week:
                pending.extend(exercises)
            elif exercises:
                try:
                    self.repo.upsert_exercises(exercises)
                except IntegrityViolation as exc:
                    logger.warning("Page %d could not be saved: %s", page.page_number, exc)
                    report.failures.append(PageFailure(page_number=page.page_number, error=exc))
                    self._discard_page_assets(exercises)
                    continue
                report.exercises.extend(exercises)
            report.pages_processed += 1

        incomplete = report.failures or report.placeholder_pages or document.missing_pages
        if replace_week and incomplete:
            logger.warning(
                "Leaving %r week %s unchanged: %d failed, %d placeholder, %d missing pages",
                course,
                week_number,
                len(report.failures),
                len(report.placeholder_pages),
                len(document.missing_pages),
            )
            self._discard_page_assets(pending)
        elif replace_week:
            try:
                self.repo.replace_week_exercises(course, week_number, pending)
            except IntegrityViolation:
                self._discard_page_assets(pending)
                raise
            report.exercises.extend(pending)

        if report.failures:
            logger.warning(
                "Ingestion of %s finished with %d failed pages", document.source_path, len(report.failures)
            )
        logger.info("Ingested %d exercises from %s", len(report.exercises), document.source_path)
        return report

    async def _process_page(
        self,
        page: PageImage,
        course: str,
        week_number: int,
        api_key: str,
        report: IngestionReport,
    ) -> Optional[List[Exercise]]:
        page_ref: Optional[str] = None
        try:
            page_ref = self.assets.save(page.data_url)
            candidates = await self.extractor.extract_page(page_image=page.data_url, api_key=api_key)
        except PAGE_SCOPED_ERRORS as exc:
            logger.warning("Page %d failed: %s", page.page_number, exc)
            report.failures.append(PageFailure(page_number=page.page_number, error=exc))
            if page_ref:
                self.assets.delete(page_ref)
            return None

        if not candidates:
            logger.debug("No exercises found on page %d", page.page_number)
            self.assets.delete(page_ref)
            return []
        logger.debug("Page %d yielded %d exercises", page.page_number, len(candidates))
        return [c.to_exercise(course, week_number, page_image_path=page_ref) for c in candidates]

    def _discard_page_assets(self, exercises: List[Exercise]) -> None:
        for ref in {e.page_image_path for e in exercises if e.page_image_path}:
            self.assets.delete(ref)
