"""Unit tests for the service layer against an in-memory SQLite store."""

# pyright: reportPrivateUsage=false

from __future__ import annotations

import json
import typing as t
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from pytest_mock import MockerFixture
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session

from fakes import COUNCIL, FakeGateway, vote_json
from sr_council.app import services
from sr_council.app.agents.extraction_agents import ExtractionCoordinator
from sr_council.app.agents.screening_agents import AICouncil
from sr_council.core import models, repositories, schemas
from sr_council.core.exceptions import (
    DownloadCancelledError,
    DownloadFailedError,
    InsufficientContentError,
    ProviderUnavailableError,
)
from sr_council.core.types import (
    AIOperation,
    BatchItemStatus,
    ConsensusType,
    DownloadStatus,
    ProviderMode,
    ScreeningDecisionType,
    UsageStatus,
)

EXTRACTOR = "extractor"


def _usage_logs(session_factory: sessionmaker[Session]) -> t.Sequence[models.AIUsageLog]:
    with session_factory() as session:
        return repositories.AIUsageRepository().get_all(session)


def _article_id(article: models.Article) -> int:
    return t.cast("int", article.id)


@pytest.fixture
def council_gateway() -> FakeGateway:
    return FakeGateway(
        {
            "model-a": vote_json("include", 90, "Adults on metformin"),
            "model-b": vote_json("include", 85),
            "model-c": vote_json("exclude", 60),
        }
    )


@pytest.fixture
def screening_service(
    session_factory: sessionmaker[Session], council_gateway: FakeGateway
) -> services.ScreeningService:
    return services.ScreeningService(session_factory, AICouncil(council_gateway, COUNCIL))


@pytest.fixture
def request_for(pico: schemas.PICOCriteria) -> t.Callable[[int], schemas.ScreenArticleRequest]:
    def make(article_id: int) -> schemas.ScreenArticleRequest:
        return schemas.ScreenArticleRequest(article_id=article_id, pico_criteria=pico)

    return make


class TestScreeningService:
    async def test_screen_article_persists_and_logs_usage(
        self,
        screening_service: services.ScreeningService,
        session_factory: sessionmaker[Session],
        article: models.Article,
        council_gateway: FakeGateway,
        request_for: t.Callable[[int], schemas.ScreenArticleRequest],
    ):
        result = await screening_service.screen_article(request_for(_article_id(article)))

        assert result.decision is ScreeningDecisionType.INCLUDE
        assert result.consensus_type is ConsensusType.MAJORITY
        assert result.confidence == 74

        stored = screening_service.get_screening_decision(_article_id(article))
        assert stored == result

        (usage,) = _usage_logs(session_factory)
        assert usage.operation is AIOperation.SCREENING
        assert usage.status is UsageStatus.SUCCESS
        assert usage.provider == "local-council"
        assert usage.model == "model-a"
        assert usage.article_id == article.id

        # Project review context is rendered into the prompt
        assert "Does metformin lower HbA1c?" in council_gateway.calls[0]["prompt"]
        assert "- Animal studies" in council_gateway.calls[0]["prompt"]

    async def test_rescreening_replaces_decision(
        self,
        screening_service: services.ScreeningService,
        session_factory: sessionmaker[Session],
        article: models.Article,
        council_gateway: FakeGateway,
        request_for: t.Callable[[int], schemas.ScreenArticleRequest],
    ):
        await screening_service.screen_article(request_for(_article_id(article)))
        council_gateway.responses = {m: vote_json("exclude", 70) for m in COUNCIL}
        second = await screening_service.screen_article(request_for(_article_id(article)))

        assert second.decision is ScreeningDecisionType.EXCLUDE
        with session_factory() as session:
            rows = repositories.ScreeningDecisionRepository().get_all(session)
        assert len(rows) == 1
        assert rows[0].decision is ScreeningDecisionType.EXCLUDE

    async def test_failure_is_logged_and_raised(
        self,
        screening_service: services.ScreeningService,
        session_factory: sessionmaker[Session],
        article: models.Article,
        council_gateway: FakeGateway,
        request_for: t.Callable[[int], schemas.ScreenArticleRequest],
    ):
        council_gateway.connected = False

        with pytest.raises(ProviderUnavailableError):
            await screening_service.screen_article(request_for(_article_id(article)))

        assert screening_service.get_screening_decision(_article_id(article)) is None
        (usage,) = _usage_logs(session_factory)
        assert usage.status is UsageStatus.FAILED
        assert usage.provider == ProviderMode.LOCAL.value
        assert usage.model == services.UNKNOWN_MODEL
        assert usage.error_message is not None

    async def test_unknown_article(
        self,
        screening_service: services.ScreeningService,
        request_for: t.Callable[[int], schemas.ScreenArticleRequest],
    ):
        with pytest.raises(repositories.RecordNotFoundError):
            await screening_service.screen_article(request_for(404))

    async def test_default_review_context_without_criteria(
        self,
        screening_service: services.ScreeningService,
        session_factory: sessionmaker[Session],
        council_gateway: FakeGateway,
        request_for: t.Callable[[int], schemas.ScreenArticleRequest],
    ):
        with session_factory.begin() as session:
            project = repositories.ProjectRepository().add(
                session, models.Project(name="Bare project")
            )
            bare = repositories.ArticleRepository().add(
                session,
                models.Article(project_id=t.cast("int", project.id), abstract="Abstract"),
            )

        await screening_service.screen_article(request_for(_article_id(bare)))

        prompt = council_gateway.calls[0]["prompt"]
        assert "Systematic review screening" in prompt
        assert "- Matches PICO criteria" in prompt

    async def test_batch_continues_after_failure(
        self,
        screening_service: services.ScreeningService,
        session_factory: sessionmaker[Session],
        article: models.Article,
        request_for: t.Callable[[int], schemas.ScreenArticleRequest],
    ):
        with session_factory.begin() as session:
            empty = repositories.ArticleRepository().add(
                session, models.Article(project_id=article.project_id, title="No text")
            )
        events: list[schemas.ScreeningProgressEvent] = []

        items = await screening_service.screen_batch(
            [request_for(_article_id(empty)), request_for(_article_id(article))],
            events.append,
        )

        assert items[0].result is None
        assert items[0].error is not None
        assert items[1].result is not None
        assert items[1].result.decision is ScreeningDecisionType.INCLUDE
        assert [(e.status, e.progress) for e in events] == [
            (BatchItemStatus.FAILED, 50.0),
            (BatchItemStatus.COMPLETE, 100.0),
        ]

    async def test_batch_records_unknown_articles(
        self,
        screening_service: services.ScreeningService,
        request_for: t.Callable[[int], schemas.ScreenArticleRequest],
    ):
        (item,) = await screening_service.screen_batch([request_for(404)])
        assert item.error == "Article 404 not found"

    async def test_manual_override_replaces_council_decision(
        self,
        screening_service: services.ScreeningService,
        session_factory: sessionmaker[Session],
        article: models.Article,
        request_for: t.Callable[[int], schemas.ScreenArticleRequest],
    ):
        await screening_service.screen_article(request_for(_article_id(article)))

        manual = screening_service.record_manual_decision(
            _article_id(article), ScreeningDecisionType.EXCLUDE, "Wrong comparator"
        )

        assert manual.confidence == 100
        assert manual.model_votes is None
        assert manual.provider == "manual"
        assert screening_service.get_screening_decision(_article_id(article)) == manual
        with session_factory() as session:
            record = repositories.ScreeningDecisionRepository().get_by_article_id(
                session, _article_id(article)
            )
        assert record is not None
        assert record.is_manual_override is True
        assert record.override_reason == "Wrong comparator"

    def test_manual_decision_unknown_article(
        self, screening_service: services.ScreeningService
    ):
        with pytest.raises(repositories.RecordNotFoundError):
            screening_service.record_manual_decision(404, ScreeningDecisionType.INCLUDE)

    async def test_save_errors_become_service_errors(
        self,
        session_factory: sessionmaker[Session],
        council_gateway: FakeGateway,
        article: models.Article,
        request_for: t.Callable[[int], schemas.ScreenArticleRequest],
    ):
        decision_repo = MagicMock(spec=repositories.ScreeningDecisionRepository)
        decision_repo.upsert.side_effect = repositories.RepositoryError("disk full")
        service = services.ScreeningService(
            session_factory, AICouncil(council_gateway, COUNCIL), decision_repo=decision_repo
        )

        with pytest.raises(services.ServiceError, match="disk full"):
            await service.screen_article(request_for(_article_id(article)))

    async def test_usage_log_failure_is_not_raised(
        self,
        session_factory: sessionmaker[Session],
        council_gateway: FakeGateway,
        article: models.Article,
        request_for: t.Callable[[int], schemas.ScreenArticleRequest],
    ):
        usage_repo = MagicMock(spec=repositories.AIUsageRepository)
        usage_repo.add.side_effect = repositories.RepositoryError("database is locked")
        service = services.ScreeningService(
            session_factory, AICouncil(council_gateway, COUNCIL), usage_repo=usage_repo
        )

        result = await service.screen_article(request_for(_article_id(article)))

        assert result.decision is ScreeningDecisionType.INCLUDE
        usage_repo.add.assert_called_once()


EXTRACTION_JSON = json.dumps(
    {
        "population": {"description": "Adults", "sample_size": 200},
        "intervention": {"name": "Metformin"},
        "study_design": "RCT",
        "primary_outcomes": [
            {"outcome": "HbA1c", "intervention_sd": 1.0, "intervention_n": 100}
        ],
    }
)


@pytest.fixture
def extraction_gateway() -> FakeGateway:
    return FakeGateway({EXTRACTOR: EXTRACTION_JSON})


@pytest.fixture
def extraction_service(
    session_factory: sessionmaker[Session], extraction_gateway: FakeGateway
) -> services.ExtractionService:
    return services.ExtractionService(
        session_factory, ExtractionCoordinator(extraction_gateway, EXTRACTOR)
    )


class TestExtractionService:
    async def test_extract_persists_and_logs_usage(
        self,
        extraction_service: services.ExtractionService,
        session_factory: sessionmaker[Session],
        article: models.Article,
    ):
        result = await extraction_service.extract_data(
            schemas.ExtractDataRequest(article_id=_article_id(article))
        )

        assert result.confidence == 85
        stored = extraction_service.get_extracted_data(_article_id(article))
        assert stored == result.extracted_data
        assert stored is not None
        assert stored.primary_outcomes[0].is_derived is True

        (usage,) = _usage_logs(session_factory)
        assert usage.operation is AIOperation.EXTRACTION
        assert usage.model == EXTRACTOR
        assert usage.provider == "local"

    async def test_update_marks_manual_edits(
        self,
        extraction_service: services.ExtractionService,
        session_factory: sessionmaker[Session],
        article: models.Article,
    ):
        result = await extraction_service.extract_data(
            schemas.ExtractDataRequest(article_id=_article_id(article))
        )
        corrected = result.extracted_data.model_copy(update={"study_design": "Cluster RCT"})

        edited = extraction_service.update_extracted_data(_article_id(article), corrected)

        assert edited.manual_edits_made is True
        stored = extraction_service.get_extracted_data(_article_id(article))
        assert stored is not None
        assert stored.study_design == "Cluster RCT"
        assert stored.manual_edits_made is True
        with session_factory() as session:
            record = repositories.ExtractedDataRepository().get_by_article_id(
                session, _article_id(article)
            )
        assert record is not None
        assert record.ai_confidence == 85
        assert record.ai_provider == "local"
        assert record.manual_edits_made is True

    async def test_failure_is_logged_and_raised(
        self,
        extraction_service: services.ExtractionService,
        session_factory: sessionmaker[Session],
        article: models.Article,
    ):
        with session_factory.begin() as session:
            empty = repositories.ArticleRepository().add(
                session, models.Article(project_id=article.project_id)
            )

        with pytest.raises(InsufficientContentError):
            await extraction_service.extract_data(
                schemas.ExtractDataRequest(article_id=_article_id(empty))
            )

        (usage,) = _usage_logs(session_factory)
        assert usage.status is UsageStatus.FAILED
        assert extraction_service.get_extracted_data(_article_id(empty)) is None


class TestModelService:
    @pytest.fixture
    def gateway(self, mocker: MockerFixture) -> MagicMock:
        gateway = mocker.MagicMock()
        gateway.download_model = mocker.AsyncMock()
        return gateway

    async def test_download_reports_progress_then_complete(self, gateway: MagicMock):
        async def download(name: str, on_progress: t.Callable[..., None]) -> None:
            on_progress(schemas.DownloadProgress(completed=30, total=100))

        gateway.download_model.side_effect = download
        events: list[schemas.ModelDownloadProgressEvent] = []

        await services.ModelService(gateway).download_model(
            schemas.DownloadModelRequest(model_name="gemma2:27b"), events.append
        )

        assert [(e.status, e.progress) for e in events] == [
            (DownloadStatus.DOWNLOADING, 30.0),
            (DownloadStatus.COMPLETE, 100.0),
        ]

    @pytest.mark.parametrize(
        ("exc", "error"),
        [
            (DownloadCancelledError("cancelled", model_name="gemma2:27b"), "cancelled"),
            (DownloadFailedError("manifest not found", model_name="gemma2:27b"), "manifest not found"),
        ],
    )
    async def test_download_failure_event(
        self, gateway: MagicMock, exc: Exception, error: str
    ):
        gateway.download_model.side_effect = exc
        events: list[schemas.ModelDownloadProgressEvent] = []

        with pytest.raises(type(exc)):
            await services.ModelService(gateway).download_model(
                schemas.DownloadModelRequest(model_name="gemma2:27b"), events.append
            )

        (event,) = events
        assert event.status is DownloadStatus.FAILED
        assert event.error == error


class TestUsageService:
    def test_summary_for_month(self, session_factory: sessionmaker[Session]):
        with session_factory.begin() as session:
            repositories.AIUsageRepository().add(
                session,
                models.AIUsageLog(
                    timestamp=datetime(2025, 5, 2, tzinfo=UTC),
                    operation=AIOperation.SCREENING,
                    provider="local-council",
                    model="model-a",
                    latency_ms=1200,
                    status=UsageStatus.SUCCESS,
                ),
            )

        (summary,) = services.UsageService(session_factory).get_usage_summary("2025-05")

        assert summary.request_count == 1
        assert summary.avg_latency_ms == 1200.0

    def test_defaults_to_current_month(self, session_factory: sessionmaker[Session]):
        service = services.UsageService(session_factory)
        with session_factory.begin() as session:
            repositories.AIUsageRepository().add(
                session,
                models.AIUsageLog(
                    operation=AIOperation.EXTRACTION,
                    provider="local",
                    model="m",
                    status=UsageStatus.FAILED,
                ),
            )

        (summary,) = service.get_usage_summary()

        assert summary.month == datetime.now(UTC).strftime("%Y-%m")
        assert summary.failed_count == 1


class TestProjectService:
    def test_project_and_articles(self, session_factory: sessionmaker[Session], pico: schemas.PICOCriteria):
        service = services.ProjectService(session_factory)
        project = service.create_project(
            schemas.ProjectCreate(name="Review", pico_criteria=pico, inclusion_criteria=["RCTs"])
        )
        project_id = t.cast("int", project.id)

        assert service.get_pico_criteria(project_id) == pico
        first = service.add_article(schemas.ArticleCreate(project_id=project_id, title="A"))
        second = service.add_article(schemas.ArticleCreate(project_id=project_id, title="B"))
        assert [a.id for a in service.list_articles(project_id)] == [first.id, second.id]

    def test_missing_pico(self, session_factory: sessionmaker[Session]):
        service = services.ProjectService(session_factory)
        project = service.create_project(schemas.ProjectCreate(name="No PICO"))

        with pytest.raises(services.ServiceError, match="no PICO"):
            service.get_pico_criteria(t.cast("int", project.id))

    def test_unknown_project(self, session_factory: sessionmaker[Session]):
        service = services.ProjectService(session_factory)
        with pytest.raises(repositories.RecordNotFoundError):
            service.get_project(404)
        with pytest.raises(repositories.RecordNotFoundError):
            service.add_article(schemas.ArticleCreate(project_id=404))
