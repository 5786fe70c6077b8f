"""
Ingestion subsystem exports.
"""

from .config import VaultConfig
from .errors import (
    AssetIOError,
    AssetNotFound,
    CourseNotFound,
    DocumentUnreadable,
    ExerciseNotFound,
    IntegrityViolation,
    PageImageMissing,
    RenderingUnavailable,
    SchemaMismatch,
    UpstreamServiceError,
    VaultError,
)
from .extractor import Extractor, GeminiExtractor, normalize_tags
from .models import (
    BoundingBox,
    Exercise,
    ExerciseCandidate,
    ExerciseSummary,
    ExerciseType,
    IngestionReport,
    PageFailure,
    PageImage,
    RasterizedDocument,
)
from .pipeline import IngestionPipeline
from .rasterizer import (
    PdftoppmStrategy,
    PyMuPdfStrategy,
    Rasterizer,
    RenderStrategy,
    SipsStrategy,
    candidate_page_filenames,
)
from .repository import ExerciseRepository, SqlAlchemyExerciseRepository
from .storage import LocalAssetStore, StoragePaths
from .vault import ExerciseVault

__all__ = [
    "AssetIOError",
    "AssetNotFound",
    "BoundingBox",
    "CourseNotFound",
    "DocumentUnreadable",
    "Exercise",
    "ExerciseCandidate",
    "ExerciseNotFound",
    "ExerciseRepository",
    "ExerciseSummary",
    "ExerciseType",
    "ExerciseVault",
    "Extractor",
    "GeminiExtractor",
    "IngestionPipeline",
    "IngestionReport",
    "IntegrityViolation",
    "LocalAssetStore",
    "PageFailure",
    "PageImage",
    "PageImageMissing",
    "PdftoppmStrategy",
    "PyMuPdfStrategy",
    "RasterizedDocument",
    "Rasterizer",
    "RenderStrategy",
    "RenderingUnavailable",
    "SchemaMismatch",
    "SipsStrategy",
    "SqlAlchemyExerciseRepository",
    "StoragePaths",
    "UpstreamServiceError",
    "VaultConfig",
    "VaultError",
    "candidate_page_filenames",
    "normalize_tags",
]
