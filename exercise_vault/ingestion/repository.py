from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Set

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, relationship, selectinload, sessionmaker

from .errors import CourseNotFound, ExerciseNotFound, IntegrityViolation
from .migrations import apply_migrations
from .models import BoundingBox, Exercise, ExerciseSummary
from .storage import LocalAssetStore

logger = logging.getLogger(__name__)

Base = declarative_base()

API_KEY_SETTING = "gemini_api_key"

CourseTree = Dict[int, List[Exercise]]


class CourseModel(Base):
    __tablename__ = "courses"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"))
    weeks = relationship(
        "WeekModel",
        back_populates="course",
        cascade="all, delete-orphan",
        order_by=lambda: WeekModel.week_number,
    )


class WeekModel(Base):
    __tablename__ = "weeks"
    __table_args__ = (UniqueConstraint("course_id", "week_number", name="uq_weeks_course_week"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    course_id = Column(Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False)
    week_number = Column(Integer, nullable=False)
    created_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"))
    course = relationship("CourseModel", back_populates="weeks")
    exercises = relationship(
        "ExerciseModel",
        back_populates="week",
        cascade="all, delete-orphan",
        order_by=lambda: [ExerciseModel.name, ExerciseModel.id],
    )


class ExerciseModel(Base):
    __tablename__ = "exercises"
    id = Column(String, primary_key=True)
    week_id = Column(Integer, ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    tags_json = Column(Text, nullable=False)
    content = Column(Text)
    notes = Column(Text)
    image_path = Column(String)
    page_image_path = Column(String)
    bounding_box_json = Column(Text)
    created_at = Column(BigInteger)
    week = relationship("WeekModel", back_populates="exercises")


class SettingModel(Base):
    __tablename__ = "app_settings"
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _load_tags(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        tags = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed tags_json: %r", raw)
        return []
    return [str(t) for t in tags] if isinstance(tags, list) else []


def _load_bbox(raw: Optional[str]) -> Optional[BoundingBox]:
    if not raw:
        return None
    try:
        return BoundingBox.from_dict(json.loads(raw))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        logger.warning("Ignoring malformed bounding_box_json: %r", raw)
        return None


class ExerciseRepository:
    """
    Abstract persistence boundary for the course/week/exercise hierarchy.
    Every write is atomic per call. Deleting rows also asks the asset store to
    remove image files that no remaining exercise references.
    """

    # Writes
    def replace_week_exercises(self, course: str, week_number: int, exercises: Iterable[Exercise]) -> None:
        raise NotImplementedError

    def upsert_exercise(self, exercise: Exercise) -> None:
        raise NotImplementedError

    def upsert_exercises(self, exercises: Iterable[Exercise]) -> None:
        raise NotImplementedError

    def update_exercise(
        self,
        exercise_id: str,
        name: Optional[str] = None,
        tags: Optional[List[str]] = None,
        notes: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    def rename_course(self, old_name: str, new_name: str) -> None:
        raise NotImplementedError

    # Deletes
    def delete_exercise(self, exercise_id: str) -> None:
        raise NotImplementedError

    def delete_week(self, course: str, week_number: int) -> None:
        raise NotImplementedError

    def delete_course(self, course: str) -> None:
        raise NotImplementedError

    # Reads
    def get_exercise(self, exercise_id: str) -> Optional[Exercise]:
        raise NotImplementedError

    def list_all(self) -> Dict[str, CourseTree]:
        raise NotImplementedError

    def get_course(self, course: str) -> Optional[CourseTree]:
        raise NotImplementedError

    def search(self, query: str) -> List[ExerciseSummary]:
        raise NotImplementedError

    def filter_by_tags(self, tags: Iterable[str]) -> List[ExerciseSummary]:
        raise NotImplementedError

    def list_tags(self) -> List[str]:
        raise NotImplementedError

    # Settings
    def get_setting(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_setting(self, key: str, value: str) -> None:
        raise NotImplementedError

    def get_api_key(self) -> Optional[str]:
        return self.get_setting(API_KEY_SETTING)

    def save_api_key(self, api_key: str) -> None:
        self.set_setting(API_KEY_SETTING, api_key)


class SqlAlchemyExerciseRepository(ExerciseRepository):
    """
    SQL-backed repository using SQLAlchemy. Works with SQLite/Postgres URLs.
    A session is opened per operation; nothing is cached between calls.
    """

    def __init__(self, database_url: str, asset_store: Optional[LocalAssetStore] = None):
        self.engine = create_engine(database_url, future=True)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self.schema_version = apply_migrations(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.assets = asset_store

    def _session(self) -> Session:
        return self.SessionLocal()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._session() as session:
            try:
                with session.begin():
                    yield session
            except IntegrityError as exc:
                raise IntegrityViolation(f"Constraint violated: {exc.orig}") from exc

    # region validation
    def _validate(self, exercises: List[Exercise]) -> None:
        seen: Set[str] = set()
        for exercise in exercises:
            if exercise.id in seen:
                raise IntegrityViolation(f"Duplicate exercise id in batch: {exercise.id}")
            seen.add(exercise.id)
            if not exercise.course or not exercise.course.strip():
                raise IntegrityViolation(f"Exercise {exercise.id} has no course")
            if self.assets is None:
                continue
            for ref in exercise.asset_refs():
                if not self.assets.exists(ref):
                    raise IntegrityViolation(f"Exercise {exercise.id} references missing asset {ref}")

    # endregion

    # region lookups
    def _find_course(self, session: Session, name: str) -> Optional[CourseModel]:
        return session.execute(select(CourseModel).where(CourseModel.name == name)).scalar_one_or_none()

    def _find_week(self, session: Session, course: str, week_number: int) -> Optional[WeekModel]:
        stmt = (
            select(WeekModel)
            .join(CourseModel, WeekModel.course_id == CourseModel.id)
            .where(CourseModel.name == course, WeekModel.week_number == week_number)
        )
        return session.execute(stmt).scalar_one_or_none()

    def _ensure_week(self, session: Session, course: str, week_number: int) -> WeekModel:
        course_model = self._find_course(session, course)
        if course_model is None:
            course_model = CourseModel(name=course)
            session.add(course_model)
            session.flush()
            logger.info("Created course %r", course)
        week = session.execute(
            select(WeekModel).where(WeekModel.course_id == course_model.id, WeekModel.week_number == week_number)
        ).scalar_one_or_none()
        if week is None:
            week = WeekModel(course_id=course_model.id, week_number=week_number)
            session.add(week)
            session.flush()
        return week

    def _asset_refs_of(self, session: Session, *conditions) -> Set[str]:
        rows = session.execute(select(ExerciseModel.image_path, ExerciseModel.page_image_path).where(*conditions))
        return {ref for row in rows for ref in row if ref}

    # endregion

    # region mapping
    def _apply_fields(self, model: ExerciseModel, exercise: Exercise, week_id: int) -> ExerciseModel:
        model.week_id = week_id
        model.name = exercise.name
        model.tags_json = json.dumps(list(exercise.tags))
        model.content = exercise.content
        model.notes = exercise.notes
        model.image_path = exercise.image_path
        model.page_image_path = exercise.page_image_path
        model.bounding_box_json = json.dumps(exercise.bounding_box.to_dict()) if exercise.bounding_box else None
        model.created_at = exercise.created_at
        return model

    def _to_exercise(self, model: ExerciseModel, course: str, week_number: int) -> Exercise:
        return Exercise(
            id=model.id,
            name=model.name,
            course=course,
            week_number=week_number,
            tags=_load_tags(model.tags_json),
            content=model.content,
            notes=model.notes,
            image_path=model.image_path,
            page_image_path=model.page_image_path,
            bounding_box=_load_bbox(model.bounding_box_json),
            created_at=int(model.created_at or 0),
        )

    def _summary_select(self):
        return (
            select(
                ExerciseModel.id,
                ExerciseModel.name,
                ExerciseModel.tags_json,
                ExerciseModel.image_path,
                CourseModel.name.label("course"),
                WeekModel.week_number,
            )
            .join(WeekModel, ExerciseModel.week_id == WeekModel.id)
            .join(CourseModel, WeekModel.course_id == CourseModel.id)
            .order_by(ExerciseModel.name, ExerciseModel.id)
        )

    def _to_summary(self, row) -> ExerciseSummary:
        return ExerciseSummary(
            id=row.id,
            name=row.name,
            tags=_load_tags(row.tags_json),
            image_path=row.image_path,
            course=row.course,
            week_number=row.week_number,
        )

    # endregion

    # region asset lifecycle
    def _release_assets(self, refs: Set[str]) -> None:
        """
        Remove files for refs no exercise row points at any more. Runs after the
        row change has committed; file errors never propagate.
        """
        if not refs or self.assets is None:
            return
        with self._session() as session:
            live = self._asset_refs_of(
                session,
                ExerciseModel.image_path.in_(list(refs)) | ExerciseModel.page_image_path.in_(list(refs)),
            )
        for ref in sorted(refs - live):
            self.assets.delete(ref)

    # endregion

    # region writes
    def replace_week_exercises(self, course: str, week_number: int, exercises: Iterable[Exercise]) -> None:
        batch = list(exercises)
        for exercise in batch:
            exercise.course = course
            exercise.week_number = week_number
        self._validate(batch)

        with self._transaction() as session:
            week = self._ensure_week(session, course, week_number)
            ids = [e.id for e in batch]
            if ids:
                foreign = session.execute(
                    select(ExerciseModel.id).where(ExerciseModel.id.in_(ids), ExerciseModel.week_id != week.id)
                ).scalars().all()
                if foreign:
                    raise IntegrityViolation(f"Exercise ids already belong to another week: {sorted(foreign)}")
            removed = self._asset_refs_of(session, ExerciseModel.week_id == week.id)
            session.execute(delete(ExerciseModel).where(ExerciseModel.week_id == week.id))
            for exercise in batch:
                session.add(self._apply_fields(ExerciseModel(id=exercise.id), exercise, week.id))

        logger.info("Replaced exercises of %r week %s with %d rows", course, week_number, len(batch))
        self._release_assets(removed)

    def upsert_exercise(self, exercise: Exercise) -> None:
        self.upsert_exercises([exercise])

    def upsert_exercises(self, exercises: Iterable[Exercise]) -> None:
        batch = list(exercises)
        if not batch:
            return
        self._validate(batch)

        replaced: Set[str] = set()
        with self._transaction() as session:
            for exercise in batch:
                week = self._ensure_week(session, exercise.course, exercise.week_number)
                model = session.get(ExerciseModel, exercise.id)
                if model is None:
                    model = ExerciseModel(id=exercise.id)
                    session.add(model)
                else:
                    replaced.update(ref for ref in (model.image_path, model.page_image_path) if ref)
                self._apply_fields(model, exercise, week.id)
        self._release_assets(replaced)

    def update_exercise(
        self,
        exercise_id: str,
        name: Optional[str] = None,
        tags: Optional[List[str]] = None,
        notes: Optional[str] = None,
    ) -> None:
        with self._transaction() as session:
            model = session.get(ExerciseModel, exercise_id)
            if model is None:
                raise ExerciseNotFound(exercise_id)
            if name is not None:
                model.name = name
            if tags is not None:
                model.tags_json = json.dumps(list(tags))
            if notes is not None:
                model.notes = notes

    def rename_course(self, old_name: str, new_name: str) -> None:
        if not new_name or not new_name.strip():
            raise IntegrityViolation("Course name must not be empty")
        if old_name == new_name:
            return
        with self._transaction() as session:
            course = self._find_course(session, old_name)
            if course is None:
                raise CourseNotFound(old_name)
            if self._find_course(session, new_name) is not None:
                raise IntegrityViolation(f"Course {new_name!r} already exists")
            course.name = new_name
        logger.info("Renamed course %r to %r", old_name, new_name)

    # endregion

    # region deletes
    def delete_exercise(self, exercise_id: str) -> None:
        with self._transaction() as session:
            model = session.get(ExerciseModel, exercise_id)
            if model is None:
                return
            refs = {ref for ref in (model.image_path, model.page_image_path) if ref}
            session.delete(model)
        self._release_assets(refs)

    def delete_week(self, course: str, week_number: int) -> None:
        with self._transaction() as session:
            week = self._find_week(session, course, week_number)
            if week is None:
                return
            refs = self._asset_refs_of(session, ExerciseModel.week_id == week.id)
            session.delete(week)
        logger.info("Deleted %r week %s", course, week_number)
        self._release_assets(refs)

    def delete_course(self, course: str) -> None:
        with self._transaction() as session:
            course_model = self._find_course(session, course)
            if course_model is None:
                return
            week_ids = select(WeekModel.id).where(WeekModel.course_id == course_model.id)
            refs = self._asset_refs_of(session, ExerciseModel.week_id.in_(week_ids))
            session.delete(course_model)
        logger.info("Deleted course %r", course)
        self._release_assets(refs)

    # endregion

    # region reads
    def get_exercise(self, exercise_id: str) -> Optional[Exercise]:
        with self._session() as session:
            model = session.get(ExerciseModel, exercise_id)
            if model is None:
                return None
            return self._to_exercise(model, model.week.course.name, model.week.week_number)

    def _course_tree(self, course: CourseModel) -> CourseTree:
        return {
            week.week_number: [self._to_exercise(m, course.name, week.week_number) for m in week.exercises]
            for week in course.weeks
        }

    def list_all(self) -> Dict[str, CourseTree]:
        with self._session() as session:
            stmt = (
                select(CourseModel)
                .options(selectinload(CourseModel.weeks).selectinload(WeekModel.exercises))
                .order_by(CourseModel.name)
            )
            return {course.name: self._course_tree(course) for course in session.execute(stmt).scalars()}

    def get_course(self, course: str) -> Optional[CourseTree]:
        with self._session() as session:
            stmt = (
                select(CourseModel)
                .options(selectinload(CourseModel.weeks).selectinload(WeekModel.exercises))
                .where(CourseModel.name == course)
            )
            model = session.execute(stmt).scalar_one_or_none()
            return self._course_tree(model) if model else None

    def search(self, query: str) -> List[ExerciseSummary]:
        # SQL lower() folds ASCII only; non-ASCII names match case-sensitively.
        stmt = self._summary_select().where(ExerciseModel.name.ilike(_like_pattern(query), escape="\\"))
        with self._session() as session:
            return [self._to_summary(row) for row in session.execute(stmt)]

    def filter_by_tags(self, tags: Iterable[str]) -> List[ExerciseSummary]:
        wanted = {t.lower() for t in tags if t}
        if not wanted:
            return []
        with self._session() as session:
            summaries = [self._to_summary(row) for row in session.execute(self._summary_select())]
        return [s for s in summaries if any(t.lower() in wanted for t in s.tags)]

    def list_tags(self) -> List[str]:
        with self._session() as session:
            raw = session.execute(select(ExerciseModel.tags_json)).scalars().all()
        return sorted({tag for tags_json in raw for tag in _load_tags(tags_json)})

    # endregion

    # region settings
    def get_setting(self, key: str) -> Optional[str]:
        with self._session() as session:
            model = session.get(SettingModel, key)
            return model.value if model else None

    def set_setting(self, key: str, value: str) -> None:
        with self._transaction() as session:
            session.merge(SettingModel(key=key, value=value))

    # endregion
