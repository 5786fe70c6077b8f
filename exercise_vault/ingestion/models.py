from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import VaultError


def now_ms() -> int:
    return int(time.time() * 1000)


def new_exercise_id() -> str:
    return str(uuid.uuid4())


class ExerciseType(str, Enum):
    EXERCISE = "exercise"
    HOMEWORK = "homework"
    PROGRAMMING = "programming"


# Classification tags accepted at index 0 of an exercise's tag list. Older
# records use "regular exercise" and "exam".
CLASSIFICATION_TAGS = ("regular exercise", "exercise", "homework", "programming", "exam")


@dataclass
class BoundingBox:
    y: float
    height: float

    def to_dict(self) -> Dict[str, float]:
        return {"y": self.y, "height": self.height}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoundingBox":
        return cls(y=float(data["y"]), height=float(data["height"]))


@dataclass
class Exercise:
    name: str
    course: str
    week_number: int
    tags: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_exercise_id)
    content: Optional[str] = None
    notes: Optional[str] = None
    image_path: Optional[str] = None
    page_image_path: Optional[str] = None
    bounding_box: Optional[BoundingBox] = None
    created_at: int = field(default_factory=now_ms)

    @property
    def classification(self) -> Optional[str]:
        """The leading tag when it is a known classification, else None."""
        if self.tags and self.tags[0] in CLASSIFICATION_TAGS:
            return self.tags[0]
        return None

    def asset_refs(self) -> List[str]:
        return [ref for ref in (self.image_path, self.page_image_path) if ref]


@dataclass
class ExerciseSummary:
    id: str
    name: str
    tags: List[str]
    image_path: Optional[str]
    course: str
    week_number: int


@dataclass
class ExerciseCandidate:
    """One exercise proposed by the extractor for a page, before it is placed in a week."""

    name: str
    classification: ExerciseType
    tags: List[str]
    id: str = field(default_factory=new_exercise_id)
    created_at: int = field(default_factory=now_ms)

    def to_exercise(
        self,
        course: str,
        week_number: int,
        page_image_path: Optional[str] = None,
    ) -> Exercise:
        return Exercise(
            id=self.id,
            name=self.name,
            course=course,
            week_number=week_number,
            tags=list(self.tags),
            page_image_path=page_image_path,
            created_at=self.created_at,
        )


@dataclass
class PageImage:
    page_number: int
    data_url: str
    placeholder: bool = False


@dataclass
class RasterizedDocument:
    source_path: str
    page_count: int
    pages: List[PageImage]
    backend: Optional[str]
    warnings: List[VaultError] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return len(self.pages) == self.page_count

    @property
    def missing_pages(self) -> List[int]:
        present = {p.page_number for p in self.pages}
        return [n for n in range(1, self.page_count + 1) if n not in present]


@dataclass
class PageFailure:
    page_number: int
    error: VaultError


@dataclass
class IngestionReport:
    source_path: str
    course: str
    week_number: int
    page_count: int = 0
    pages_processed: int = 0
    placeholder_pages: List[int] = field(default_factory=list)
    exercises: List[Exercise] = field(default_factory=list)
    failures: List[PageFailure] = field(default_factory=list)
    warnings: List[VaultError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures
