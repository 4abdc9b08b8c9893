# src/sr_council/core/models.py
"""SQLModel/Alchemy models for SR council.

These are for DB R/W only and abstracted away from the council core, which works on
Pydantic schemas from `sr_council.core.schemas`. JSON columns hold serialized schemas
(votes, PICO criteria, extracted data).

Notes:
    - Integer primary keys, article ids are part of the request/response contracts.
    - Timestamps are stored as UTC.
"""

import enum
import typing as t
from collections.abc import Mapping, MutableMapping, Sequence
from datetime import UTC, datetime

import sqlalchemy as sa
from pydantic import ConfigDict, JsonValue
from pydantic.types import PositiveInt
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlmodel import Field, SQLModel  # type: ignore

from sr_council.core.types import (
    AIOperation,
    ConsensusType,
    ExtractionStatus,
    LogLevel,
    ScreeningDecisionType,
    UsageStatus,
)


def enum_values(enum_class: type[enum.Enum]) -> list[str]:
    """Get values for enum."""
    return [member.value for member in enum_class]


def enum_column(
    enum_class: type[enum.Enum], *, nullable: bool = False, index: bool = False
) -> sa.Column[t.Any]:
    """Non-native enum column persisting the enum values."""
    return sa.Column(
        sa.Enum(
            enum_class,
            name=f"{enum_class.__name__.lower()}_enum",
            values_callable=enum_values,
            native_enum=False,
            validate_strings=True,
        ),
        nullable=nullable,
        index=index,
    )


def utc_now() -> datetime:
    return datetime.now(UTC)


class SQLModelBase(AsyncAttrs, SQLModel):
    """Base SQLModel with ``awaitable_attrs`` mixin attribute.

    Attributes:
        awaitable_attrs: SQLAlchemy proxy mixin that makes all attributes awaitable.
    """

    model_config = ConfigDict(  # type: ignore
        from_attributes=True,
        validate_assignment=True,
        arbitrary_types_allowed=True,
        use_attribute_docstrings=True,
    )


Base = SQLModelBase


class Project(SQLModelBase, table=True):
    """Systematic review project.

    Holds the research question and the PICO criteria articles are screened against.
    """

    _tablename: t.ClassVar[t.Literal["projects"]] = "projects"

    __tablename__ = _tablename  # pyright: ignore # type: ignore

    id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=sa.Column(sa.DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=sa.Column(
            sa.DateTime(timezone=True), onupdate=utc_now, nullable=False
        ),
    )
    name: str = Field(sa_column=sa.Column(sa.String(255), nullable=False))
    research_question: str | None = Field(
        default=None, sa_column=sa.Column(sa.Text(), nullable=True)
    )
    pico_criteria: Mapping[str, str] | None = Field(
        default=None,
        description="Serialized `PICOCriteria`.",
        sa_column=sa.Column(sa.JSON(none_as_null=True), nullable=True),
    )
    inclusion_criteria: Sequence[str] = Field(
        default_factory=list, sa_column=sa.Column(sa.JSON, nullable=False)
    )
    exclusion_criteria: Sequence[str] = Field(
        default_factory=list, sa_column=sa.Column(sa.JSON, nullable=False)
    )


class Article(SQLModelBase, table=True):
    """Article of a project, with text sections filled in by the PDF extractor."""

    _tablename: t.ClassVar[t.Literal["articles"]] = "articles"

    __tablename__ = _tablename  # pyright: ignore # type: ignore

    id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=sa.Column(sa.DateTime(timezone=True), nullable=False),
    )
    project_id: int = Field(
        sa_column=sa.Column(
            sa.Integer,
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )

    title: str | None = Field(default=None, sa_column=sa.Column(sa.Text()))
    authors: str | None = Field(default=None, sa_column=sa.Column(sa.Text()))
    journal: str | None = Field(default=None, sa_column=sa.Column(sa.String(500)))
    year: int | None = Field(default=None)
    doi: str | None = Field(
        default=None, sa_column=sa.Column(sa.String(255), index=True)
    )
    pmid: str | None = Field(default=None, sa_column=sa.Column(sa.String(32)))

    abstract: str | None = Field(default=None, sa_column=sa.Column(sa.Text()))
    methods: str | None = Field(default=None, sa_column=sa.Column(sa.Text()))
    results: str | None = Field(default=None, sa_column=sa.Column(sa.Text()))
    discussion: str | None = Field(default=None, sa_column=sa.Column(sa.Text()))
    full_text: str | None = Field(default=None, sa_column=sa.Column(sa.Text()))

    pdf_path: str | None = Field(default=None, sa_column=sa.Column(sa.Text()))
    original_filename: str | None = Field(
        default=None, sa_column=sa.Column(sa.String(500))
    )
    extraction_status: ExtractionStatus = Field(
        default=ExtractionStatus.PENDING,
        sa_column=enum_column(ExtractionStatus),
    )
    """PDF text extraction status, maintained by the PDF extractor."""


class ScreeningDecision(SQLModelBase, table=True):
    """Current screening decision of an article.

    At most one row per article. Saving a new decision replaces the previous one, see
    `ScreeningDecisionRepository.upsert`.
    """

    _tablename: t.ClassVar[t.Literal["screening_decisions"]] = "screening_decisions"

    __tablename__ = _tablename  # pyright: ignore # type: ignore

    id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=sa.Column(sa.DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=sa.Column(
            sa.DateTime(timezone=True), onupdate=utc_now, nullable=False
        ),
    )
    article_id: int = Field(
        sa_column=sa.Column(
            sa.Integer,
            sa.ForeignKey("articles.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        )
    )
    decision: ScreeningDecisionType = Field(
        sa_column=enum_column(ScreeningDecisionType, index=True)
    )
    confidence: int = Field(ge=0, le=100)
    """Calibrated confidence, 0-100."""

    reasoning: str = Field(sa_column=sa.Column(sa.Text(), nullable=False))
    consensus_type: ConsensusType = Field(sa_column=enum_column(ConsensusType))
    model_votes: Sequence[MutableMapping[str, JsonValue]] | None = Field(
        default=None,
        description="Serialized `ModelVote` list in panel order. NULL for manual decisions.",
        sa_column=sa.Column(sa.JSON(none_as_null=True), nullable=True),
    )
    ai_provider: str = Field(sa_column=sa.Column(sa.String(50), nullable=False))
    cost_usd: float = Field(default=0.0)
    is_manual_override: bool = Field(default=False)
    override_reason: str | None = Field(
        default=None, sa_column=sa.Column(sa.Text(), nullable=True)
    )


class ExtractedDataRecord(SQLModelBase, table=True):
    """Extracted study data of an article. At most one row per article."""

    _tablename: t.ClassVar[t.Literal["extracted_data"]] = "extracted_data"

    __tablename__ = _tablename  # pyright: ignore # type: ignore

    id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=sa.Column(sa.DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=sa.Column(
            sa.DateTime(timezone=True), onupdate=utc_now, nullable=False
        ),
    )
    article_id: int = Field(
        sa_column=sa.Column(
            sa.Integer,
            sa.ForeignKey("articles.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        )
    )
    data: MutableMapping[str, JsonValue] = Field(
        default_factory=dict,
        description="Serialized `ExtractedData`.",
        sa_column=sa.Column(sa.JSON, nullable=False),
    )
    ai_confidence: int | None = Field(default=None, ge=0, le=100)
    ai_provider: str | None = Field(
        default=None, sa_column=sa.Column(sa.String(50), nullable=True)
    )
    manual_edits_made: bool = Field(default=False)


class AIUsageLog(SQLModelBase, table=True):
    """One AI request, successful or not. Feeds the monthly usage summary."""

    _tablename: t.ClassVar[t.Literal["ai_usage_logs"]] = "ai_usage_logs"

    __tablename__ = _tablename  # pyright: ignore # type: ignore

    id: int | None = Field(default=None, primary_key=True)
    timestamp: datetime = Field(
        default_factory=utc_now,
        sa_column=sa.Column(sa.DateTime(timezone=True), nullable=False, index=True),
    )
    operation: AIOperation = Field(sa_column=enum_column(AIOperation))
    article_id: int | None = Field(default=None, index=True)
    provider: str = Field(sa_column=sa.Column(sa.String(50), nullable=False))
    model: str = Field(sa_column=sa.Column(sa.String(100), nullable=False))
    latency_ms: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0.0)
    status: UsageStatus = Field(sa_column=enum_column(UsageStatus, index=True))
    error_message: str | None = Field(
        default=None, sa_column=sa.Column(sa.Text(), nullable=True)
    )


class LogRecord(SQLModelBase, table=True):
    """Model for storing app log records."""

    _tablename: t.ClassVar[t.Literal["log_records"]] = "log_records"

    __tablename__ = _tablename  # pyright: ignore # type: ignore

    id: int | None = Field(default=None, primary_key=True)
    timestamp: datetime = Field(
        sa_column=sa.Column(sa.DateTime(timezone=True), nullable=False, index=True)
    )
    level: LogLevel = Field(sa_column=enum_column(LogLevel, index=True))
    message: str = Field(sa_column=sa.Column(sa.Text(), nullable=False))
    module: str | None = Field(
        default=None, sa_column=sa.Column(sa.String(100), default=None, nullable=True)
    )
    name: str | None = Field(
        default=None, sa_column=sa.Column(sa.String(100), default=None, nullable=True)
    )
    function: str | None = Field(
        default=None, sa_column=sa.Column(sa.String(200), default=None, nullable=True)
    )
    line: PositiveInt | None = Field(
        default=None, sa_column=sa.Column(sa.Integer(), default=None, nullable=True)
    )
    thread: str | None = Field(default=None, description="{thread.name}:{thread.id}")
    process: str | None = Field(default=None, description="{process.name}:{process.id}")
    extra: Mapping[str, JsonValue] = Field(
        default_factory=dict,
        description="User provided extra context.",
        sa_column=sa.Column(sa.JSON, nullable=False),
    )
    exception: Mapping[str, JsonValue] | None = Field(
        default=None,
        description="Exception information.",
        sa_column=sa.Column(sa.JSON(none_as_null=True), nullable=True),
    )
    record: Mapping[str, JsonValue] = Field(
        default_factory=dict,
        description="Full log record context.",
        sa_column=sa.Column(sa.JSON, nullable=False),
    )
    article_id: int | None = Field(
        default=None,
        description="Read from the ``article_id`` extra by the sink. None if not related to an article.",
        index=True,
    )
