"""Shared pytest fixtures: in-memory SQLite store and a scripted inference gateway."""

from __future__ import annotations

import typing as t
from collections.abc import Generator

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session

from fakes import FakeGateway
from sr_council.app.database import create_tables, make_engine, make_session_factory
from sr_council.core import models
from sr_council.core.schemas import ArticleData, PICOCriteria


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def db_engine() -> Generator[sa.Engine, None, None]:
    """In-memory SQLite engine with all tables created."""
    engine = make_engine("sqlite://")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine: sa.Engine) -> sessionmaker[Session]:
    return make_session_factory(db_engine)


@pytest.fixture
def pico() -> PICOCriteria:
    return PICOCriteria(
        population="Adults with type 2 diabetes",
        intervention="Metformin",
        comparison="Placebo",
        outcomes="HbA1c change at 12 weeks",
    )


@pytest.fixture
def article_data() -> ArticleData:
    return ArticleData(
        id=1,
        project_id=1,
        title="Metformin versus placebo in type 2 diabetes: a randomised trial",
        authors="Doe J, Roe R",
        journal="Diabetes Care",
        year=2021,
        abstract="We randomised 200 adults with type 2 diabetes to metformin or placebo.",
        methods="Double-blind, parallel group RCT.",
        results="HbA1c fell by 1.1% with metformin versus 0.1% with placebo.",
        full_text="Full text of the trial report.",
    )


@pytest.fixture
def project(session_factory: sessionmaker[Session], pico: PICOCriteria) -> models.Project:
    with session_factory.begin() as session:
        project = models.Project(
            name="Metformin review",
            research_question="Does metformin lower HbA1c?",
            pico_criteria=pico.model_dump(),
            inclusion_criteria=["RCTs"],
            exclusion_criteria=["Animal studies"],
        )
        session.add(project)
        session.flush()
        return project


@pytest.fixture
def article(
    session_factory: sessionmaker[Session], project: models.Project
) -> models.Article:
    with session_factory.begin() as session:
        article = models.Article(
            project_id=t.cast("int", project.id),
            title="Metformin versus placebo",
            abstract="We randomised 200 adults with type 2 diabetes.",
            full_text="Full text of the trial report.",
        )
        session.add(article)
        session.flush()
        return article
