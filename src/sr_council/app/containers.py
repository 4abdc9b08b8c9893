"""Composition root.

Builds the gateway, council, coordinator, repositories and services from settings.
Nothing in the package holds module-level instances, every entry point builds one
`Container` and passes it down.

Examples:
    ```python
    container = build_container(get_settings())
    try:
        await container.gateway.check_connection()
        result = await container.screening_service.screen_article(request)
    finally:
        await container.aclose()
    ```
"""

from __future__ import annotations

import typing as t
from dataclasses import dataclass

from sr_council.app.agents.extraction_agents import ExtractionCoordinator
from sr_council.app.agents.screening_agents import AICouncil
from sr_council.app.config import Settings, get_settings
from sr_council.app.database import create_tables, make_engine, make_session_factory
from sr_council.app.gateway import OllamaGateway
from sr_council.app.services import (
    ExtractionService,
    ModelService,
    ProjectService,
    ScreeningService,
    UsageService,
)
from sr_council.core import repositories

if t.TYPE_CHECKING:
    import httpx
    from sqlalchemy.engine import Engine
    from sqlalchemy.orm import sessionmaker
    from sqlmodel import Session


@dataclass
class Container:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    gateway: OllamaGateway
    council: AICouncil
    coordinator: ExtractionCoordinator
    screening_service: ScreeningService
    extraction_service: ExtractionService
    model_service: ModelService
    usage_service: UsageService
    project_service: ProjectService

    def create_tables(self) -> None:
        create_tables(self.engine)

    async def aclose(self) -> None:
        await self.gateway.aclose()
        self.engine.dispose()


def build_container(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Container:
    """Wire the application from ``settings`` (default: `get_settings()`).

    Args:
        settings: Application settings.
        transport: Optional httpx transport for the gateway.
    """
    settings = settings or get_settings()
    engine = make_engine(settings.database_url, echo=settings.debug)
    session_factory = make_session_factory(engine)

    gateway = OllamaGateway(
        settings.ollama_base_url,
        connect_timeout=settings.connect_timeout,
        request_timeout=settings.request_timeout,
        transport=transport,
    )
    council = AICouncil(
        gateway, settings.council_models, temperature=settings.screening_temperature
    )
    coordinator = ExtractionCoordinator(
        gateway,
        settings.extraction_model,
        temperature=settings.extraction_temperature,
    )

    article_repo = repositories.ArticleRepository()
    usage_repo = repositories.AIUsageRepository()
    project_repo = repositories.ProjectRepository()

    return Container(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        gateway=gateway,
        council=council,
        coordinator=coordinator,
        screening_service=ScreeningService(
            session_factory,
            council,
            article_repo=article_repo,
            usage_repo=usage_repo,
            project_repo=project_repo,
            decision_repo=repositories.ScreeningDecisionRepository(),
        ),
        extraction_service=ExtractionService(
            session_factory,
            coordinator,
            article_repo=article_repo,
            usage_repo=usage_repo,
            extracted_repo=repositories.ExtractedDataRepository(),
        ),
        model_service=ModelService(gateway),
        usage_service=UsageService(session_factory, usage_repo=usage_repo),
        project_service=ProjectService(
            session_factory, project_repo=project_repo, article_repo=article_repo
        ),
    )
