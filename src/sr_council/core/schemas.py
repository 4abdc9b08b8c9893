# src/sr_council/core/schemas.py

"""Core schemas for SR council.

Pydantic schemas used between the council, the services and the process boundary.
Persistence is handled by :mod:`sr_council.core.models`.
"""

from __future__ import annotations

import math
import typing as t
from decimal import ROUND_HALF_UP, Decimal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeFloat,
    NonNegativeInt,
    field_validator,
    model_validator,
)

from sr_council.core.types import (
    AIOperation,
    BatchItemStatus,
    ConsensusType,
    DownloadStatus,
    EffectSizeType,
    OutcomeType,
    ProviderMode,
    RiskOfBiasJudgement,
    ScreeningDecisionType,
    UsageStatus,
)

COUNCIL_SIZE = 3
"""Number of models on the screening panel."""

type Confidence = t.Annotated[int, Field(ge=0, le=100)]
"""Integer confidence score in [0, 100]."""


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero.

    Built-in `round` rounds halves to even, which would make 72.5 and 73.5 land on
    the same side.
    """
    if not math.isfinite(value):
        msg = f"{value} is not a finite number"
        raise ValueError(msg)
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class BaseSchema(BaseModel):  # noqa: D101
    model_config = ConfigDict(
        populate_by_name=True,  # use field names AND aliases
        validate_assignment=True,
        use_attribute_docstrings=True,  # populate '.description' from attr docstring
    )


# --- Screening ---


class PICOCriteria(BaseSchema):
    """PICO criteria of a project. Passed by value into every screening call.

    Blank fields are allowed here so that the council can reject them with
    `InvalidCriteriaError` instead of a validation error at the boundary.
    """

    model_config = ConfigDict(frozen=True)

    population: str
    intervention: str
    comparison: str
    outcomes: str

    def blank_fields(self) -> list[str]:
        """Names of the criteria that are empty or whitespace only."""
        return [
            name
            for name in ("population", "intervention", "comparison", "outcomes")
            if not getattr(self, name).strip()
        ]


class ArticleData(BaseSchema):
    """Read-only view of an article handed to the screening and extraction core."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    project_id: int | None = None
    title: str | None = None
    authors: str | None = None
    journal: str | None = None
    year: int | None = None
    doi: str | None = None
    abstract: str | None = None
    methods: str | None = None
    results: str | None = None
    discussion: str | None = None
    full_text: str | None = None

    @property
    def has_content(self) -> bool:
        """True if there is an abstract or full text to screen."""
        return bool((self.abstract or "").strip() or (self.full_text or "").strip())


class PicoAlignment(BaseSchema):
    """Per-criterion alignment as judged by a model (``yes | no | partial - why``)."""

    model_config = ConfigDict(extra="ignore")

    population: str | None = None
    intervention: str | None = None
    comparison: str | None = None
    outcomes: str | None = None


class ScreeningResponse(BaseSchema):
    """One model's screening answer, validated from its JSON output."""

    model_config = ConfigDict(extra="ignore")

    decision: ScreeningDecisionType
    """Include or exclude."""

    confidence: Confidence
    """Confidence in the decision, 0-100."""

    reasoning: str = ""
    """Justification citing the article."""

    pico_alignment: PicoAlignment | None = None

    exclusion_criteria_violated: list[str] = Field(default_factory=list)

    @field_validator("decision", mode="before")
    @classmethod
    def _normalise_decision(cls, value: t.Any) -> t.Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: t.Any) -> t.Any:
        if isinstance(value, bool):
            msg = "confidence must be a number"
            raise ValueError(msg)  # noqa: TRY004
        if isinstance(value, str):
            value = float(value.strip().rstrip("%"))
        if isinstance(value, float):
            return round_half_up(value)
        return value

    @field_validator("reasoning", mode="before")
    @classmethod
    def _none_reasoning(cls, value: t.Any) -> t.Any:
        return "" if value is None else value


class ModelVote(BaseSchema):
    """One model's vote in one council call. Never mutated once produced."""

    model_config = ConfigDict(frozen=True)

    model: str
    """Model name as known to the inference service."""

    decision: ScreeningDecisionType

    confidence: Confidence

    reasoning: str

    latency_ms: NonNegativeInt = 0

    error: str | None = None
    """Set on synthetic votes recorded for a failed model call."""

    @property
    def failed(self) -> bool:
        return self.error is not None


class ScreeningResult(BaseSchema):
    """Council (or manual) screening decision for one article.

    This is the screening response of the process boundary and the unit persisted
    as an article's current screening decision.
    """

    decision: ScreeningDecisionType
    confidence: Confidence
    reasoning: str
    consensus_type: ConsensusType
    model_votes: list[ModelVote] | None = None
    """Votes in panel declaration order. None for manual decisions."""

    provider: str
    cost_usd: NonNegativeFloat = 0.0

    @model_validator(mode="after")
    def _check_votes(self) -> t.Self:
        if self.consensus_type is ConsensusType.MANUAL:
            if self.model_votes is not None:
                msg = "Manual decisions carry no model votes"
                raise ValueError(msg)
        elif not self.model_votes or len(self.model_votes) != COUNCIL_SIZE:
            msg = (
                f"{self.consensus_type} decision requires exactly {COUNCIL_SIZE} model "
                f"votes, got {len(self.model_votes or [])}"
            )
            raise ValueError(msg)
        return self

    @property
    def failed_votes(self) -> int:
        """Number of synthetic votes recorded for failed model calls."""
        return sum(1 for vote in self.model_votes or () if vote.failed)

    @property
    def is_degraded(self) -> bool:
        """True if the decision rests on fewer models than were queried."""
        return self.failed_votes > 0


class ScreenArticleRequest(BaseSchema):
    article_id: int
    pico_criteria: PICOCriteria
    provider: ProviderMode = ProviderMode.LOCAL
    force_cloud: bool = False


class BatchScreeningItem(BaseSchema):
    """Outcome of one article in a batch screening run."""

    article_id: int
    result: ScreeningResult | None = None
    error: str | None = None


class ScreeningProgressEvent(BaseSchema):
    article_id: int
    status: BatchItemStatus
    progress: float = Field(ge=0.0, le=100.0)


# --- Extraction ---


class _ExtractionSchema(BaseSchema):
    model_config = ConfigDict(extra="ignore")


class PopulationDemographics(_ExtractionSchema):
    mean_age: float | None = None
    gender_distribution: str | None = None
    ethnicity: str | None = None
    inclusion_criteria: str | None = None


class PopulationData(_ExtractionSchema):
    description: str | None = None
    sample_size: int | None = None
    demographics: PopulationDemographics | None = None


class InterventionData(_ExtractionSchema):
    """Intervention or comparator arm."""

    name: str | None = None
    description: str | None = None
    dosage: str | None = None
    duration: str | None = None
    delivery_method: str | None = None


class OutcomeData(_ExtractionSchema):
    name: str
    type: OutcomeType | None = None
    measurement: str | None = None
    timepoint: str | None = None


class OutcomeResult(_ExtractionSchema):
    """One reported effect.

    ``is_derived`` marks that a standard error or SD was computed by
    :func:`sr_council.core.stats.derive_missing_stats` rather than copied from the
    article. Exports must carry it through.
    """

    outcome: str = ""
    measurement_tool: str | None = None
    timepoint: str | None = None
    intervention_mean: float | None = None
    intervention_sd: float | None = None
    intervention_n: int | None = None
    control_mean: float | None = None
    control_sd: float | None = None
    control_n: int | None = None
    p_value: float | None = None
    std_error: float | None = None
    hazard_ratio: float | None = None
    effect_size: float | None = None
    effect_size_type: EffectSizeType | None = None
    confidence_interval: tuple[float, float] | None = None
    is_derived: bool = False


class Statistics(_ExtractionSchema):
    test_used: str | None = None
    p_values: list[float] = Field(default_factory=list)
    confidence_intervals: list[tuple[float, float]] = Field(default_factory=list)
    effect_sizes: list[float] = Field(default_factory=list)


class RiskOfBias(_ExtractionSchema):
    """Cochrane risk of bias judgements, one per domain."""

    random_sequence_generation: RiskOfBiasJudgement = RiskOfBiasJudgement.UNCLEAR
    allocation_concealment: RiskOfBiasJudgement = RiskOfBiasJudgement.UNCLEAR
    blinding_participants: RiskOfBiasJudgement = RiskOfBiasJudgement.UNCLEAR
    blinding_assessors: RiskOfBiasJudgement = RiskOfBiasJudgement.UNCLEAR
    incomplete_outcome: RiskOfBiasJudgement = RiskOfBiasJudgement.UNCLEAR
    selective_reporting: RiskOfBiasJudgement = RiskOfBiasJudgement.UNCLEAR
    other_bias: RiskOfBiasJudgement = RiskOfBiasJudgement.UNCLEAR

    @field_validator("*", mode="before")
    @classmethod
    def _lowercase(cls, value: t.Any) -> t.Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class QualityScore(_ExtractionSchema):
    tool: str
    score: float | str


class ExtractedData(_ExtractionSchema):
    """Structured study data extracted from one article.

    The required fields mirror the extraction prompt's output schema. Everything else
    is optional since models routinely omit what the article does not report.
    """

    population: PopulationData
    intervention: InterventionData
    comparison: InterventionData | None = None
    outcomes: list[OutcomeData] = Field(default_factory=list)

    study_design: str | None
    sample_size: int | None = None
    duration_weeks: float | None = None

    primary_outcomes: list[OutcomeResult]
    secondary_outcomes: list[OutcomeResult] = Field(default_factory=list)
    statistics: Statistics | None = None

    randomized_n: int | None = None
    analyzed_n: int | None = None
    attrition_rate: float | None = None

    risk_of_bias: RiskOfBias | None = None
    quality_score: QualityScore | None = None
    author_conclusion: str | None = None
    notes: str | None = None

    manual_edits_made: bool = False
    """True once a human has edited the AI output."""


class ExtractDataRequest(BaseSchema):
    article_id: int
    provider: ProviderMode = ProviderMode.LOCAL


class ExtractionResult(BaseSchema):
    """Extraction response of the process boundary."""

    extracted_data: ExtractedData
    confidence: Confidence
    provider: str
    cost_usd: NonNegativeFloat = 0.0


# --- Models / inference service ---


class DownloadProgress(BaseSchema):
    """One progress line streamed by the inference service while pulling a model."""

    status: str = "downloading"
    completed: NonNegativeInt = 0
    total: NonNegativeInt = 0

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(100.0, self.completed / self.total * 100)


class DownloadModelRequest(BaseSchema):
    model_name: str = Field(min_length=1)


class ModelDownloadProgressEvent(BaseSchema):
    model_name: str
    progress: float = Field(ge=0.0, le=100.0)
    status: DownloadStatus
    error: str | None = None


class InstalledModel(BaseSchema):
    model_config = ConfigDict(extra="ignore")

    name: str
    size: int | None = None
    modified_at: str | None = None
    digest: str | None = None
    details: dict[str, t.Any] = Field(default_factory=dict)


class AvailableModel(BaseSchema):
    """Catalogue entry of a model recommended for council use."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    parameter_size: str
    recommended_for: tuple[str, ...]
    requires_gpu: bool
    download_size: str


class ModelStatus(BaseSchema):
    name: str
    installed: bool
    in_progress: bool


class InferenceStatus(BaseSchema):
    """Connectivity and installed models of the local inference service."""

    connected: bool
    version: str | None = None
    models: list[str] = Field(default_factory=list)


# --- Usage / projects ---


class AIUsageCreate(BaseSchema):
    operation: AIOperation
    article_id: int | None = None
    provider: str
    model: str
    latency_ms: NonNegativeInt
    cost_usd: NonNegativeFloat = 0.0
    status: UsageStatus
    error_message: str | None = None


class AIUsageSummary(BaseSchema):
    month: str
    """``YYYY-MM``."""
    provider: str
    request_count: int
    failed_count: int
    total_cost_usd: float
    avg_latency_ms: float


class ProjectCreate(BaseSchema):
    name: str = Field(min_length=1)
    research_question: str | None = None
    pico_criteria: PICOCriteria | None = None
    inclusion_criteria: list[str] = Field(default_factory=list)
    exclusion_criteria: list[str] = Field(default_factory=list)


class ArticleCreate(BaseSchema):
    project_id: int
    title: str | None = None
    authors: str | None = None
    journal: str | None = None
    year: int | None = None
    doi: str | None = None
    pmid: str | None = None
    abstract: str | None = None
    methods: str | None = None
    results: str | None = None
    discussion: str | None = None
    full_text: str | None = None
    pdf_path: str | None = None
    original_filename: str | None = None


class ReviewContext(BaseSchema):
    """Review-level context rendered into the screening prompt alongside PICO."""

    model_config = ConfigDict(frozen=True)

    research_question: str = "Systematic review screening"
    inclusion_criteria: tuple[str, ...] = ("Matches PICO criteria",)
    exclusion_criteria: tuple[str, ...] = ("Does not match PICO",)
