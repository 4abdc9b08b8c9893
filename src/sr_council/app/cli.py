"""CLI entrypoint of SR council.

Every command builds one `Container` from settings in the app callback. Results are
printed as JSON.
"""

from __future__ import annotations

import asyncio
import typing as t
from pathlib import Path

import typer
from loguru import logger

from sr_council.app.config import get_settings
from sr_council.app.containers import Container, build_container
from sr_council.app.logging import configure_logging
from sr_council.app.services import ServiceError
from sr_council.core.exceptions import CouncilError
from sr_council.core.repositories import RepositoryError
from sr_council.core.schemas import (
    ArticleCreate,
    DownloadModelRequest,
    ExtractDataRequest,
    ModelDownloadProgressEvent,
    PICOCriteria,
    ProjectCreate,
    ScreenArticleRequest,
    ScreeningProgressEvent,
)
from sr_council.core.types import ProviderMode, ScreeningDecisionType

if t.TYPE_CHECKING:
    from collections.abc import Coroutine

    from pydantic import BaseModel

app = typer.Typer(
    name="sr-council",
    help="Screen and extract systematic review articles with a local AI council.",
    no_args_is_help=True,
)


def _container(ctx: typer.Context) -> Container:
    return t.cast("Container", ctx.obj)


def _echo_json(model: BaseModel) -> None:
    typer.echo(model.model_dump_json(indent=2))


def _fail(exc: Exception) -> t.NoReturn:
    typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _run[T](container: Container, coro: Coroutine[t.Any, t.Any, T]) -> T:
    """Run ``coro`` and close the container on the same event loop."""

    async def runner() -> T:
        try:
            return await coro
        finally:
            await container.aclose()

    try:
        return asyncio.run(runner())
    except (CouncilError, ServiceError, RepositoryError) as exc:
        _fail(exc)


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", help="Debug logging."),
) -> None:
    settings = get_settings()
    if debug:
        settings = settings.model_copy(update={"debug": True})
    container = build_container(settings)
    configure_logging(
        settings, session_factory=container.session_factory, engine=container.engine
    )
    ctx.obj = container
    ctx.call_on_close(container.engine.dispose)


@app.command("init-db")
def init_db(ctx: typer.Context) -> None:
    """Create database tables."""
    _container(ctx).create_tables()
    typer.echo("Database initialized.")


@app.command("create-project")
def create_project(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Project name."),
    population: str = typer.Option(..., "--population", "-p"),
    intervention: str = typer.Option(..., "--intervention", "-i"),
    comparison: str = typer.Option(..., "--comparison", "-c"),
    outcomes: str = typer.Option(..., "--outcomes", "-o"),
    research_question: str | None = typer.Option(None, "--research-question", "-q"),
    include: list[str] = typer.Option([], "--include", help="Inclusion criterion, repeatable."),
    exclude: list[str] = typer.Option([], "--exclude", help="Exclusion criterion, repeatable."),
) -> None:
    """Create a project with its PICO criteria."""
    try:
        project = _container(ctx).project_service.create_project(
            ProjectCreate(
                name=name,
                research_question=research_question,
                pico_criteria=PICOCriteria(
                    population=population,
                    intervention=intervention,
                    comparison=comparison,
                    outcomes=outcomes,
                ),
                inclusion_criteria=include,
                exclusion_criteria=exclude,
            )
        )
    except RepositoryError as exc:
        _fail(exc)
    typer.echo(f"Created project {project.id}")


@app.command("add-article")
def add_article(
    ctx: typer.Context,
    project_id: int = typer.Argument(...),
    title: str | None = typer.Option(None, "--title"),
    authors: str | None = typer.Option(None, "--authors"),
    journal: str | None = typer.Option(None, "--journal"),
    year: int | None = typer.Option(None, "--year"),
    doi: str | None = typer.Option(None, "--doi"),
    abstract: str | None = typer.Option(None, "--abstract"),
    full_text_file: Path | None = typer.Option(
        None,
        "--full-text-file",
        exists=True,
        dir_okay=False,
        readable=True,
        help="Plain text file with the extracted article text.",
    ),
) -> None:
    """Add an article to a project."""
    full_text = full_text_file.read_text(encoding="utf-8") if full_text_file else None
    try:
        article = _container(ctx).project_service.add_article(
            ArticleCreate(
                project_id=project_id,
                title=title,
                authors=authors,
                journal=journal,
                year=year,
                doi=doi,
                abstract=abstract,
                full_text=full_text,
                original_filename=full_text_file.name if full_text_file else None,
            )
        )
    except RepositoryError as exc:
        _fail(exc)
    typer.echo(f"Added article {article.id}")


@app.command()
def status(ctx: typer.Context) -> None:
    """Show Ollama connectivity and installed models."""
    container = _container(ctx)
    _echo_json(_run(container, container.model_service.check_status()))


@app.command()
def models(ctx: typer.Context) -> None:
    """List models recommended for council use."""
    for model in _container(ctx).model_service.available_models():
        typer.echo(
            f"{model.name:<16} {model.parameter_size:>5} {model.download_size:>6}  {model.description}"
        )


@app.command()
def pull(ctx: typer.Context, model_name: str = typer.Argument(...)) -> None:
    """Download a model, printing progress."""
    container = _container(ctx)
    shown = -1

    def on_progress(event: ModelDownloadProgressEvent) -> None:
        nonlocal shown
        if event.error:
            typer.echo(f"{event.model_name}: {event.status} ({event.error})")
        elif int(event.progress) != shown:
            shown = int(event.progress)
            typer.echo(f"{event.model_name}: {shown}%")

    _run(
        container,
        container.model_service.download_model(
            DownloadModelRequest(model_name=model_name), on_progress
        ),
    )


@app.command()
def screen(
    ctx: typer.Context,
    article_id: int = typer.Argument(...),
    cloud: bool = typer.Option(False, "--cloud", help="Request cloud inference."),
) -> None:
    """Screen one article with the council, using its project's PICO criteria."""
    container = _container(ctx)

    async def _screen() -> None:
        article = container.screening_service.get_article(article_id)
        if article.project_id is None:
            msg = f"Article {article_id} has no project"
            raise ServiceError(msg)
        pico = container.project_service.get_pico_criteria(article.project_id)
        await container.gateway.check_connection()
        result = await container.screening_service.screen_article(
            ScreenArticleRequest(
                article_id=article_id,
                pico_criteria=pico,
                provider=ProviderMode.CLOUD if cloud else ProviderMode.LOCAL,
            )
        )
        _echo_json(result)

    _run(container, _screen())


@app.command("screen-project")
def screen_project(ctx: typer.Context, project_id: int = typer.Argument(...)) -> None:
    """Screen every article of a project, one after another."""
    container = _container(ctx)

    def on_progress(event: ScreeningProgressEvent) -> None:
        typer.echo(
            f"[{event.progress:5.1f}%] article {event.article_id}: {event.status}"
        )

    async def _screen_all() -> None:
        pico = container.project_service.get_pico_criteria(project_id)
        articles = container.project_service.list_articles(project_id)
        await container.gateway.check_connection()
        items = await container.screening_service.screen_batch(
            [
                ScreenArticleRequest(article_id=a.id, pico_criteria=pico)
                for a in articles
                if a.id is not None
            ],
            on_progress,
        )
        failed = sum(1 for item in items if item.error is not None)
        typer.echo(f"Screened {len(items) - failed} of {len(items)} articles.")

    _run(container, _screen_all())


@app.command()
def override(
    ctx: typer.Context,
    article_id: int = typer.Argument(...),
    decision: ScreeningDecisionType = typer.Argument(...),
    reason: str | None = typer.Option(None, "--reason"),
) -> None:
    """Record a manual screening decision."""
    try:
        result = _container(ctx).screening_service.record_manual_decision(
            article_id, decision, reason
        )
    except (ServiceError, RepositoryError) as exc:
        _fail(exc)
    _echo_json(result)


@app.command()
def extract(ctx: typer.Context, article_id: int = typer.Argument(...)) -> None:
    """Extract structured study data from one article."""
    container = _container(ctx)

    async def _extract() -> None:
        await container.gateway.check_connection()
        result = await container.extraction_service.extract_data(
            ExtractDataRequest(article_id=article_id)
        )
        _echo_json(result)

    _run(container, _extract())


@app.command()
def usage(
    ctx: typer.Context,
    month: str | None = typer.Option(None, "--month", help="YYYY-MM, default current month."),
) -> None:
    """Show AI usage of a month by provider."""
    try:
        summaries = _container(ctx).usage_service.get_usage_summary(month)
    except ValueError as exc:
        _fail(exc)
    if not summaries:
        typer.echo("No AI usage recorded.")
    for summary in summaries:
        _echo_json(summary)
    logger.debug("Listed {} usage summaries", len(summaries))


if __name__ == "__main__":
    app()
