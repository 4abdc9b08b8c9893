"""Core types for SR council.

Anything used as a SQLModel field type cannot be Literal, SQLAlchemy requires column
types to be classes. So use StrEnum instead. Literal is fine nested in values/schemas.

Notes:
    - Any Enum is `Iterable` by default, Literal types need typing.get_args().
    - Wire values are the enum values, e.g. ``ConsensusType.MAJORITY == "2-1"``.
"""

from __future__ import annotations

import typing as t
from enum import StrEnum, auto


class ScreeningDecisionType(StrEnum):
    """Screening decision enum type.

    Attributes:
        include: Include the study in the systematic review.
        exclude: Exclude the study from the systematic review.
    """

    INCLUDE = auto()
    """Include the study in the systematic review."""
    EXCLUDE = auto()
    """Exclude the study from the systematic review."""


class ConsensusType(StrEnum):
    """How the council arrived at a decision.

    ``SPLIT`` is kept for output compatibility only. With three votes over a binary
    decision at least two always agree, so the council never produces it.
    """

    UNANIMOUS = "unanimous"
    MAJORITY = "2-1"
    SPLIT = "3-way-split"
    MANUAL = "manual"

    @property
    def multiplier(self) -> float:
        """Consensus-strength multiplier applied to the winning side's confidence."""
        return _CONSENSUS_MULTIPLIERS[self]


_CONSENSUS_MULTIPLIERS: dict[ConsensusType, float] = {
    ConsensusType.UNANIMOUS: 1.0,
    ConsensusType.MAJORITY: 0.85,
    ConsensusType.SPLIT: 0.5,
    ConsensusType.MANUAL: 1.0,
}


class ProviderMode(StrEnum):
    """Inference provider requested by the caller. Only LOCAL is implemented."""

    LOCAL = auto()
    CLOUD = auto()


class CouncilState(StrEnum):
    """States of one council screening call, always visited in this order."""

    DISPATCHING = auto()
    COLLECTING = auto()
    RECONCILING = auto()
    DONE = auto()


class DownloadStatus(StrEnum):
    """Model download progress status as reported to the UI."""

    DOWNLOADING = auto()
    COMPLETE = auto()
    FAILED = auto()


class BatchItemStatus(StrEnum):
    """Per-article status in batch screening progress events."""

    COMPLETE = auto()
    FAILED = auto()


class AIOperation(StrEnum):
    """Operation recorded in the AI usage log."""

    SCREENING = auto()
    EXTRACTION = auto()


class UsageStatus(StrEnum):
    SUCCESS = auto()
    FAILED = auto()


class ExtractionStatus(StrEnum):
    """PDF text extraction status of an article. Set by the PDF extractor."""

    PENDING = auto()
    PROCESSING = auto()
    COMPLETE = auto()
    FAILED = auto()


class RiskOfBiasJudgement(StrEnum):
    """Cochrane RoB judgement for a single domain."""

    LOW = auto()
    HIGH = auto()
    UNCLEAR = auto()


class EffectSizeType(StrEnum):
    SMD = "SMD"
    MD = "MD"
    RR = "RR"
    OR = "OR"
    HR = "HR"


class OutcomeType(StrEnum):
    CONTINUOUS = auto()
    DICHOTOMOUS = auto()
    ORDINAL = auto()


class LogLevel(StrEnum):
    """Loguru log levels.

    Attributes:
        TRACE | trace (str|int): TRACE | 5
        DEBUG | debug (str|int): DEBUG | 10
        INFO | info (str|int): INFO | 20
        SUCCESS | success (str|int): SUCCESS | 25
        WARNING | warning (str|int): WARNING | 30
        ERROR | error (str|int): ERROR | 40
        CRITICAL | critical (str|int): CRITICAL | 50

    Examples:
        >>> LogLevel.INFO.int
        ... 20
        >>> list(LogLevel.__members__)
        ... ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]
    """

    def __new__(cls, value: str, level_int: int, *args: t.Any) -> t.Self:
        self = str.__new__(cls, value.upper())
        self._value_ = value.upper()
        self.int = level_int
        return self

    @classmethod
    def _missing_(cls, value: object) -> LogLevel | None:
        if isinstance(value, str):
            return cls.__members__.get(value.upper())
        return None

    TRACE = "trace", 5
    DEBUG = "debug", 10
    INFO = "info", 20
    SUCCESS = "success", 25
    WARNING = "warning", 30
    ERROR = "error", 40
    CRITICAL = "critical", 50
