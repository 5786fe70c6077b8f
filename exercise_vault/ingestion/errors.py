from __future__ import annotations

from typing import Optional


class VaultError(Exception):
    """Base class for every error raised by the ingestion subsystem."""


class DocumentUnreadable(VaultError):
    """The source document could not be opened or has no pages."""


class RenderingUnavailable(VaultError):
    """Every render strategy failed; callers receive placeholder pages instead."""


class PageImageMissing(VaultError):
    """A rendered page file was not found under any known naming convention."""

    def __init__(self, page_number: Optional[int], message: Optional[str] = None):
        self.page_number = page_number
        super().__init__(message or f"No rendered image found for page {page_number}")


class AssetIOError(VaultError):
    """Reading or writing an asset file failed."""


class AssetNotFound(AssetIOError):
    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Asset not found: {ref}")


class UpstreamServiceError(VaultError):
    """The classification service answered with a non-success status or was unreachable."""

    def __init__(self, status_code: Optional[int], body: str, url: str = ""):
        self.status_code = status_code
        self.body = body
        self.url = url
        if status_code is None:
            super().__init__(f"Classification service unreachable: {body}")
        else:
            super().__init__(f"Classification service error (status {status_code}): {body}")


class SchemaMismatch(VaultError):
    """The classification response did not match the expected structure."""


class IntegrityViolation(VaultError):
    """A write would break a uniqueness or referential invariant."""


class CourseNotFound(VaultError):
    def __init__(self, course: str):
        self.course = course
        super().__init__(f"Course not found: {course}")


class ExerciseNotFound(VaultError):
    def __init__(self, exercise_id: str):
        self.exercise_id = exercise_id
        super().__init__(f"Exercise not found: {exercise_id}")
