"""Repository implementations for SR council models.

Note:
    - Methods accept a Session provided by the calling service. Repositories do not
      manage transactions (commit/rollback), services do:

      ``with self.session_factory.begin() as session``:
            - Executes the queries within a session.
            - Commits the session.
            - Rollbacks the session on error.

    - SQLAlchemy errors are logged and re-raised as `RepositoryError` subclasses.

Examples:
    ```python
    repo = ScreeningDecisionRepository()
    with session_factory.begin() as session:
        decision = repo.upsert(session, ScreeningDecision(article_id=1, ...))
    ```
"""

from __future__ import annotations

import types
import typing as t
from datetime import UTC, datetime

from loguru import logger
from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, and_, col, select
from sqlmodel.sql.expression import SelectOfScalar

from sr_council.core.models import (
    AIUsageLog,
    Article,
    Base,
    ExtractedDataRecord,
    LogRecord,
    Project,
    ScreeningDecision,
)
from sr_council.core.schemas import AIUsageSummary
from sr_council.core.types import LogLevel, UsageStatus

if t.TYPE_CHECKING:
    from collections.abc import Sequence


class RepositoryError(Exception):
    """Base exception for persistence layer failures."""


class ConstraintViolationError(RepositoryError):
    """Database constraint violation (unique constraint, foreign key, etc.)."""


class RecordNotFoundError(RepositoryError):
    """Requested record was not found in the database."""


class BaseRepository[T: Base]:
    """Base repository implementing common database operations."""

    @property
    def model_cls(self) -> type[T]:
        """Get the model class associated with the repository."""
        # First parametrized BaseRepository (sub)class in the MRO, e.g.
        # class SubRepo(BaseRepository[ActualModel]) or SubRepo(KeyedRepo[ActualModel])
        generic_base = next(
            (
                base
                for klass in type(self).__mro__
                for base in types.get_original_bases(klass)
                if isinstance(t.get_origin(base), type)
                and issubclass(t.get_origin(base), BaseRepository)
            ),
            None,
        )
        if generic_base is None:
            raise TypeError(
                f"Could not determine the generic base for {type(self).__name__}"
            )

        model_arg = t.get_args(generic_base)[0]
        if not isinstance(model_arg, type):
            raise TypeError(
                f"Expected a type argument for BaseRepository, got {model_arg}"
            )
        return model_arg

    def _construct_get_stmt(self, id: int) -> SelectOfScalar[T]:
        Model = self.model_cls
        return select(Model).where(Model.id == id)  # pyright: ignore

    def get_by_id(self, session: Session, id: int) -> T | None:
        try:
            stmt = self._construct_get_stmt(id)
            return session.exec(stmt).first()
        except SQLAlchemyError as exc:
            msg = f"Database error in get_by_id for {self.model_cls.__name__}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc

    def get_all(self, session: Session, limit: int | None = None) -> Sequence[T]:
        try:
            query = select(self.model_cls)
            if limit is not None:
                query = query.limit(limit)
            return session.exec(query).all()
        except SQLAlchemyError as exc:
            msg = f"Failed to fetch all records for {self.model_cls.__name__}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc

    def _construct_list_stmt(self, **filters: t.Any) -> SelectOfScalar[T]:
        Model = self.model_cls
        stmt = select(Model)
        where_clauses = []
        for c, v in filters.items():
            if not hasattr(Model, c):
                msg = f"Invalid column name {c} for model {Model.__name__}"
                logger.warning(msg)
                raise ValueError(msg)
            where_clauses.append(getattr(Model, c) == v)

        if where_clauses:
            stmt = stmt.where(and_(*where_clauses))
        return stmt.order_by(Model.id)  # pyright: ignore

    def list(self, session: Session, **filters: t.Any) -> Sequence[T]:
        try:
            stmt = self._construct_list_stmt(**filters)
            return session.exec(stmt).all()
        except SQLAlchemyError as exc:
            msg = f"Failed to list {self.model_cls.__name__} with filters {filters}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc

    def add(self, session: Session, record: T) -> T:
        try:
            session.add(record)
            session.flush([record])
            return record
        except IntegrityError as exc:
            msg = f"Constraint violation adding {self.model_cls.__name__}: {exc}"
            logger.exception(msg)
            raise ConstraintViolationError(msg) from exc
        except SQLAlchemyError as exc:
            msg = f"Database error adding {self.model_cls.__name__}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc


class ProjectRepository(BaseRepository[Project]):
    """Repository for Project model operations."""


class ArticleRepository(BaseRepository[Article]):
    """Repository for Article model operations."""

    def get_by_project_id(self, session: Session, project_id: int) -> Sequence[Article]:
        """Articles of a project in insertion order."""
        return self.list(session, project_id=project_id)


class _ArticleKeyedRepository[T: (ScreeningDecision, ExtractedDataRecord)](
    BaseRepository[T]
):
    """Rows unique per article, saved with insert-or-replace semantics."""

    def get_by_article_id(self, session: Session, article_id: int) -> T | None:
        try:
            Model = self.model_cls
            stmt = select(Model).where(Model.article_id == article_id)
            return session.exec(stmt).first()
        except SQLAlchemyError as exc:
            msg = f"Database error in get_by_article_id for {self.model_cls.__name__}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc

    def upsert(self, session: Session, record: T) -> T:
        """Insert ``record`` or replace the current row of the same article.

        The primary key and ``created_at`` of an existing row are kept, every other
        column is overwritten.
        """
        existing = self.get_by_article_id(session, record.article_id)
        if existing is None:
            return self.add(session, record)

        excluded = {"id", "created_at"}
        for name in self.model_cls.model_fields:
            if name not in excluded:
                setattr(existing, name, getattr(record, name))
        existing.updated_at = datetime.now(UTC)
        try:
            session.add(existing)
            session.flush([existing])
            return existing
        except IntegrityError as exc:
            msg = f"Constraint violation replacing {self.model_cls.__name__} of article {record.article_id}: {exc}"
            logger.exception(msg)
            raise ConstraintViolationError(msg) from exc
        except SQLAlchemyError as exc:
            msg = f"Database error replacing {self.model_cls.__name__} of article {record.article_id}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc


class ScreeningDecisionRepository(_ArticleKeyedRepository[ScreeningDecision]):
    """Repository for ScreeningDecision model operations."""


class ExtractedDataRepository(_ArticleKeyedRepository[ExtractedDataRecord]):
    """Repository for ExtractedDataRecord model operations."""


class AIUsageRepository(BaseRepository[AIUsageLog]):
    """Repository for AIUsageLog model operations."""

    def get_monthly_summary(
        self, session: Session, month: str
    ) -> Sequence[AIUsageSummary]:
        """Usage of one calendar month grouped by provider.

        Args:
            session: The database session.
            month: ``YYYY-MM``.

        Returns:
            One summary per provider, ordered by provider name.

        Raises:
            ValueError: If ``month`` is not ``YYYY-MM``.
            RepositoryError: If a database error occurs.
        """
        start = datetime.strptime(month, "%Y-%m").replace(tzinfo=UTC)
        end = (
            start.replace(year=start.year + 1, month=1)
            if start.month == 12
            else start.replace(month=start.month + 1)
        )
        failed = func.sum(case((col(AIUsageLog.status) == UsageStatus.FAILED, 1), else_=0))
        stmt = (
            select(
                AIUsageLog.provider,
                func.count(col(AIUsageLog.id)),
                failed,
                func.coalesce(func.sum(AIUsageLog.cost_usd), 0.0),
                func.coalesce(func.avg(AIUsageLog.latency_ms), 0.0),
            )
            .where(col(AIUsageLog.timestamp) >= start, col(AIUsageLog.timestamp) < end)
            .group_by(AIUsageLog.provider)
            .order_by(AIUsageLog.provider)
        )
        try:
            rows = session.exec(stmt).all()
        except SQLAlchemyError as exc:
            msg = f"Database error in get_monthly_summary for {month}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc
        return [
            AIUsageSummary(
                month=month,
                provider=provider,
                request_count=count,
                failed_count=int(failed_count or 0),
                total_cost_usd=float(cost),
                avg_latency_ms=float(latency),
            )
            for provider, count, failed_count, cost, latency in rows
        ]


class LogRepository(BaseRepository[LogRecord]):
    """Repository for LogRecord model operations."""

    def get_by_level(
        self, session: Session, level: LogLevel, limit: int | None = 100
    ) -> Sequence[LogRecord]:
        try:
            stmt = (
                select(LogRecord)
                .where(LogRecord.level == level)
                .order_by(col(LogRecord.timestamp).desc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return session.exec(stmt).all()
        except SQLAlchemyError as exc:
            msg = f"Database error fetching {level} log records: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc
