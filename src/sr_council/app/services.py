# pyright: reportPrivateUsage=false
"""Application Service Layer.

Services are the process boundary: they load articles, call the council or the
extraction coordinator, persist results and log AI usage. Each service owns its
transactions (``with self.session_factory.begin() as session``), repositories only
receive the session.

Model calls are async, persistence is sync. SQLite writes are short, so they run
inline on the event loop.
"""

from __future__ import annotations

import time
import typing as t
from datetime import UTC, datetime

from loguru import logger

from sr_council.core import models, repositories, schemas
from sr_council.core.constants import (
    MANUAL_CONFIDENCE,
    MANUAL_PROVIDER,
)
from sr_council.core.exceptions import (
    CouncilError,
    DownloadCancelledError,
    DownloadError,
)
from sr_council.core.repositories import RecordNotFoundError, RepositoryError
from sr_council.core.types import (
    AIOperation,
    BatchItemStatus,
    ConsensusType,
    DownloadStatus,
    UsageStatus,
)

if t.TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from sqlalchemy.orm import sessionmaker
    from sqlmodel import Session

    from sr_council.app.agents.extraction_agents import ExtractionCoordinator
    from sr_council.app.agents.screening_agents import AICouncil
    from sr_council.app.gateway import OllamaGateway
    from sr_council.core.types import CouncilState, ScreeningDecisionType

UNKNOWN_MODEL = "unknown"


class ServiceError(Exception):
    """Base exception for service layer errors."""


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class BaseService:
    """Base service providing session management."""

    def __init__(self, factory: sessionmaker[Session]):
        self.session_factory = factory


class _ArticleService(BaseService):
    """Shared article loading and usage logging of AI services."""

    def __init__(
        self,
        factory: sessionmaker[Session],
        article_repo: repositories.ArticleRepository | None = None,
        usage_repo: repositories.AIUsageRepository | None = None,
    ):
        super().__init__(factory)
        self.article_repo = article_repo or repositories.ArticleRepository()
        self.usage_repo = usage_repo or repositories.AIUsageRepository()

    def _get_article(self, session: Session, article_id: int) -> models.Article:
        article = self.article_repo.get_by_id(session, article_id)
        if article is None:
            msg = f"Article {article_id} not found"
            raise RecordNotFoundError(msg)
        return article

    def get_article(self, article_id: int) -> schemas.ArticleData:
        """Read-only view of an article.

        Raises:
            RecordNotFoundError: Unknown article id.
        """
        with self.session_factory.begin() as session:
            return schemas.ArticleData.model_validate(
                self._get_article(session, article_id)
            )

    def log_usage(self, usage: schemas.AIUsageCreate) -> None:
        """Record one AI request. Failures to log are logged and not raised."""
        try:
            with self.session_factory.begin() as session:
                self.usage_repo.add(session, models.AIUsageLog(**usage.model_dump()))
        except RepositoryError:
            logger.bind(article_id=usage.article_id).exception(
                "Failed to log AI usage"
            )


class ScreeningService(_ArticleService):
    """Council screening of articles and manual overrides."""

    def __init__(
        self,
        factory: sessionmaker[Session],
        council: AICouncil,
        article_repo: repositories.ArticleRepository | None = None,
        usage_repo: repositories.AIUsageRepository | None = None,
        project_repo: repositories.ProjectRepository | None = None,
        decision_repo: repositories.ScreeningDecisionRepository | None = None,
    ):
        super().__init__(factory, article_repo, usage_repo)
        self.council = council
        self.project_repo = project_repo or repositories.ProjectRepository()
        self.decision_repo = decision_repo or repositories.ScreeningDecisionRepository()

    def _load(
        self, article_id: int
    ) -> tuple[schemas.ArticleData, schemas.ReviewContext]:
        with self.session_factory.begin() as session:
            article = self._get_article(session, article_id)
            project = self.project_repo.get_by_id(session, article.project_id)
            review = schemas.ReviewContext()
            if project is not None:
                review = schemas.ReviewContext(
                    research_question=project.research_question
                    or review.research_question,
                    inclusion_criteria=tuple(project.inclusion_criteria)
                    or review.inclusion_criteria,
                    exclusion_criteria=tuple(project.exclusion_criteria)
                    or review.exclusion_criteria,
                )
            return schemas.ArticleData.model_validate(article), review

    def _save(
        self,
        article_id: int,
        result: schemas.ScreeningResult,
        *,
        override_reason: str | None = None,
    ) -> None:
        record = models.ScreeningDecision(
            article_id=article_id,
            decision=result.decision,
            confidence=result.confidence,
            reasoning=result.reasoning,
            consensus_type=result.consensus_type,
            model_votes=(
                [v.model_dump(mode="json") for v in result.model_votes]
                if result.model_votes is not None
                else None
            ),
            ai_provider=result.provider,
            cost_usd=result.cost_usd,
            is_manual_override=result.consensus_type is ConsensusType.MANUAL,
            override_reason=override_reason,
        )
        try:
            with self.session_factory.begin() as session:
                self.decision_repo.upsert(session, record)
        except RepositoryError as exc:
            msg = f"Failed to save screening decision of article {article_id}: {exc}"
            raise ServiceError(msg) from exc

    async def screen_article(
        self,
        request: schemas.ScreenArticleRequest,
        *,
        on_state: Callable[[CouncilState], None] | None = None,
    ) -> schemas.ScreeningResult:
        """Screen one article with the council and persist the decision.

        Usage is logged on success and on failure.

        Raises:
            RecordNotFoundError: Unknown article id.
            CouncilError: Preconditions of the council call failed.
            ServiceError: The decision could not be saved.
        """
        article, review = self._load(request.article_id)
        log = logger.bind(article_id=article.id)
        start = time.perf_counter()
        try:
            result = await self.council.screen_article(
                article,
                request.pico_criteria,
                request.provider,
                review=review,
                force_cloud=request.force_cloud,
                on_state=on_state,
            )
        except CouncilError as exc:
            log.warning("Screening failed: {}", exc)
            self.log_usage(
                schemas.AIUsageCreate(
                    operation=AIOperation.SCREENING,
                    article_id=article.id,
                    provider=request.provider.value,
                    model=UNKNOWN_MODEL,
                    latency_ms=_elapsed_ms(start),
                    status=UsageStatus.FAILED,
                    error_message=str(exc),
                )
            )
            raise

        latency_ms = _elapsed_ms(start)
        self._save(article.id, result)
        self.log_usage(
            schemas.AIUsageCreate(
                operation=AIOperation.SCREENING,
                article_id=article.id,
                provider=result.provider,
                model=result.model_votes[0].model if result.model_votes else UNKNOWN_MODEL,
                latency_ms=latency_ms,
                cost_usd=result.cost_usd,
                status=UsageStatus.SUCCESS,
            )
        )
        return result

    async def screen_batch(
        self,
        requests: Sequence[schemas.ScreenArticleRequest],
        on_progress: Callable[[schemas.ScreeningProgressEvent], None] | None = None,
    ) -> list[schemas.BatchScreeningItem]:
        """Screen articles one after another.

        A failing article is recorded with its error and the batch continues. A
        progress event is emitted after every article.
        """
        items: list[schemas.BatchScreeningItem] = []
        total = len(requests)
        for request in requests:
            try:
                result = await self.screen_article(request)
            except (CouncilError, ServiceError, RepositoryError) as exc:
                logger.bind(article_id=request.article_id).error(
                    "Batch screening failed for article: {}", exc
                )
                items.append(
                    schemas.BatchScreeningItem(
                        article_id=request.article_id, error=str(exc)
                    )
                )
                status = BatchItemStatus.FAILED
            else:
                items.append(
                    schemas.BatchScreeningItem(
                        article_id=request.article_id, result=result
                    )
                )
                status = BatchItemStatus.COMPLETE
            if on_progress is not None:
                on_progress(
                    schemas.ScreeningProgressEvent(
                        article_id=request.article_id,
                        status=status,
                        progress=len(items) / total * 100,
                    )
                )
        return items

    def record_manual_decision(
        self,
        article_id: int,
        decision: ScreeningDecisionType,
        reason: str | None = None,
    ) -> schemas.ScreeningResult:
        """Record a human decision, replacing any current decision of the article.

        Raises:
            RecordNotFoundError: Unknown article id.
            ServiceError: The decision could not be saved.
        """
        with self.session_factory.begin() as session:
            self._get_article(session, article_id)
        result = schemas.ScreeningResult(
            decision=decision,
            confidence=MANUAL_CONFIDENCE,
            reasoning=reason or "Manual decision",
            consensus_type=ConsensusType.MANUAL,
            model_votes=None,
            provider=MANUAL_PROVIDER,
            cost_usd=0.0,
        )
        self._save(article_id, result, override_reason=reason)
        logger.bind(article_id=article_id).info("Manual decision {}", decision)
        return result

    def get_screening_decision(self, article_id: int) -> schemas.ScreeningResult | None:
        with self.session_factory.begin() as session:
            record = self.decision_repo.get_by_article_id(session, article_id)
            if record is None:
                return None
            return schemas.ScreeningResult(
                decision=record.decision,
                confidence=record.confidence,
                reasoning=record.reasoning,
                consensus_type=record.consensus_type,
                model_votes=(
                    [schemas.ModelVote.model_validate(v) for v in record.model_votes]
                    if record.model_votes is not None
                    else None
                ),
                provider=record.ai_provider,
                cost_usd=record.cost_usd,
            )


class ExtractionService(_ArticleService):
    """Structured data extraction and human corrections."""

    def __init__(
        self,
        factory: sessionmaker[Session],
        coordinator: ExtractionCoordinator,
        article_repo: repositories.ArticleRepository | None = None,
        usage_repo: repositories.AIUsageRepository | None = None,
        extracted_repo: repositories.ExtractedDataRepository | None = None,
    ):
        super().__init__(factory, article_repo, usage_repo)
        self.coordinator = coordinator
        self.extracted_repo = extracted_repo or repositories.ExtractedDataRepository()

    def _save(
        self,
        article_id: int,
        data: schemas.ExtractedData,
        *,
        confidence: int | None,
        provider: str | None,
    ) -> None:
        record = models.ExtractedDataRecord(
            article_id=article_id,
            data=data.model_dump(mode="json"),
            ai_confidence=confidence,
            ai_provider=provider,
            manual_edits_made=data.manual_edits_made,
        )
        try:
            with self.session_factory.begin() as session:
                self.extracted_repo.upsert(session, record)
        except RepositoryError as exc:
            msg = f"Failed to save extracted data of article {article_id}: {exc}"
            raise ServiceError(msg) from exc

    async def extract_data(
        self, request: schemas.ExtractDataRequest
    ) -> schemas.ExtractionResult:
        """Extract study data from one article and persist it.

        Raises:
            RecordNotFoundError: Unknown article id.
            CouncilError: Preconditions failed, the model call failed or its output
                was invalid.
            ServiceError: The data could not be saved.
        """
        article = self.get_article(request.article_id)
        log = logger.bind(article_id=article.id)
        start = time.perf_counter()
        try:
            result = await self.coordinator.extract_data(article, request.provider)
        except CouncilError as exc:
            log.warning("Extraction failed: {}", exc)
            self.log_usage(
                schemas.AIUsageCreate(
                    operation=AIOperation.EXTRACTION,
                    article_id=article.id,
                    provider=request.provider.value,
                    model=self.coordinator.model,
                    latency_ms=_elapsed_ms(start),
                    status=UsageStatus.FAILED,
                    error_message=str(exc),
                )
            )
            raise

        latency_ms = _elapsed_ms(start)
        self._save(
            article.id,
            result.extracted_data,
            confidence=result.confidence,
            provider=result.provider,
        )
        self.log_usage(
            schemas.AIUsageCreate(
                operation=AIOperation.EXTRACTION,
                article_id=article.id,
                provider=result.provider,
                model=self.coordinator.model,
                latency_ms=latency_ms,
                cost_usd=result.cost_usd,
                status=UsageStatus.SUCCESS,
            )
        )
        return result

    def update_extracted_data(
        self, article_id: int, data: schemas.ExtractedData
    ) -> schemas.ExtractedData:
        """Save a human correction of the extracted data.

        Sets ``manual_edits_made``. The AI confidence and provider are kept.
        """
        with self.session_factory.begin() as session:
            self._get_article(session, article_id)
            current = self.extracted_repo.get_by_article_id(session, article_id)
            confidence = current.ai_confidence if current else None
            provider = current.ai_provider if current else None
        edited = data.model_copy(update={"manual_edits_made": True})
        self._save(article_id, edited, confidence=confidence, provider=provider)
        return edited

    def get_extracted_data(self, article_id: int) -> schemas.ExtractedData | None:
        with self.session_factory.begin() as session:
            record = self.extracted_repo.get_by_article_id(session, article_id)
            if record is None:
                return None
            return schemas.ExtractedData.model_validate(record.data)


class ModelService:
    """Inference service status and model management."""

    def __init__(self, gateway: OllamaGateway):
        self.gateway = gateway

    async def check_status(self) -> schemas.InferenceStatus:
        return await self.gateway.get_status()

    def available_models(self) -> tuple[schemas.AvailableModel, ...]:
        return self.gateway.available_models()

    async def model_status(self, name: str) -> schemas.ModelStatus:
        return await self.gateway.model_status(name)

    async def cancel_download(self, name: str) -> bool:
        return await self.gateway.cancel_download(name)

    async def download_model(
        self,
        request: schemas.DownloadModelRequest,
        on_progress: Callable[[schemas.ModelDownloadProgressEvent], None]
        | None = None,
    ) -> None:
        """Download a model, reporting progress as UI events.

        A final ``complete`` or ``failed`` event is always emitted. Cancellation is
        reported as ``failed`` with error ``cancelled``.

        Raises:
            DownloadError: The download failed, was cancelled or is already running.
        """
        name = request.model_name
        last_progress = 0.0

        def emit(
            progress: float, status: DownloadStatus, error: str | None = None
        ) -> None:
            if on_progress is not None:
                on_progress(
                    schemas.ModelDownloadProgressEvent(
                        model_name=name, progress=progress, status=status, error=error
                    )
                )

        def forward(progress: schemas.DownloadProgress) -> None:
            nonlocal last_progress
            last_progress = progress.percent
            emit(last_progress, DownloadStatus.DOWNLOADING)

        try:
            await self.gateway.download_model(name, forward)
        except DownloadError as exc:
            error = "cancelled" if isinstance(exc, DownloadCancelledError) else str(exc)
            emit(last_progress, DownloadStatus.FAILED, error)
            raise
        emit(100.0, DownloadStatus.COMPLETE)


class UsageService(BaseService):
    def __init__(
        self,
        factory: sessionmaker[Session],
        usage_repo: repositories.AIUsageRepository | None = None,
    ):
        super().__init__(factory)
        self.usage_repo = usage_repo or repositories.AIUsageRepository()

    def get_usage_summary(
        self, month: str | None = None
    ) -> Sequence[schemas.AIUsageSummary]:
        """Usage of ``month`` (``YYYY-MM``, default current UTC month) by provider."""
        month = month or datetime.now(UTC).strftime("%Y-%m")
        with self.session_factory.begin() as session:
            return self.usage_repo.get_monthly_summary(session, month)


class ProjectService(BaseService):
    """Projects and their articles."""

    def __init__(
        self,
        factory: sessionmaker[Session],
        project_repo: repositories.ProjectRepository | None = None,
        article_repo: repositories.ArticleRepository | None = None,
    ):
        super().__init__(factory)
        self.project_repo = project_repo or repositories.ProjectRepository()
        self.article_repo = article_repo or repositories.ArticleRepository()

    def create_project(self, data: schemas.ProjectCreate) -> models.Project:
        project = models.Project(
            name=data.name,
            research_question=data.research_question,
            pico_criteria=data.pico_criteria.model_dump() if data.pico_criteria else None,
            inclusion_criteria=list(data.inclusion_criteria),
            exclusion_criteria=list(data.exclusion_criteria),
        )
        with self.session_factory.begin() as session:
            return self.project_repo.add(session, project)

    def get_project(self, project_id: int) -> models.Project:
        with self.session_factory.begin() as session:
            project = self.project_repo.get_by_id(session, project_id)
            if project is None:
                msg = f"Project {project_id} not found"
                raise RecordNotFoundError(msg)
            return project

    def get_pico_criteria(self, project_id: int) -> schemas.PICOCriteria:
        """PICO criteria of a project.

        Raises:
            RecordNotFoundError: Unknown project.
            ServiceError: The project has no PICO criteria.
        """
        project = self.get_project(project_id)
        if not project.pico_criteria:
            msg = f"Project {project_id} has no PICO criteria"
            raise ServiceError(msg)
        return schemas.PICOCriteria.model_validate(project.pico_criteria)

    def add_article(self, data: schemas.ArticleCreate) -> models.Article:
        """Add an article to a project.

        Raises:
            RecordNotFoundError: Unknown project.
        """
        with self.session_factory.begin() as session:
            if self.project_repo.get_by_id(session, data.project_id) is None:
                msg = f"Project {data.project_id} not found"
                raise RecordNotFoundError(msg)
            return self.article_repo.add(session, models.Article(**data.model_dump()))

    def list_articles(self, project_id: int) -> Sequence[models.Article]:
        with self.session_factory.begin() as session:
            return self.article_repo.get_by_project_id(session, project_id)
