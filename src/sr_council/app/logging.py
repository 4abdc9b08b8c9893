from __future__ import annotations

import json
import sys
import typing as t
from datetime import UTC

import logfire
from loguru import logger

from sr_council.core.models import LogRecord
from sr_council.core.types import LogLevel

if t.TYPE_CHECKING:
    from loguru import Message
    from sqlalchemy.engine import Engine
    from sqlalchemy.orm import sessionmaker
    from sqlmodel.orm.session import Session as SQLModelSession

    from sr_council.app.config import Settings

LOGGING_FORMAT = "{time:!UTC} | {level: <8} | {name}:{function}:{line} | {message} | {extra} | t:{thread.name}:{thread.id}"


def _as_article_id(value: t.Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


class DatabaseLogSink:
    """SQL sink for loguru that uses SQLModel."""

    def __init__(  # pyright: ignore [reportMissingSuperCall] # there's no super ...
        self,
        session_factory: sessionmaker[SQLModelSession],
    ) -> None:
        """Initialize the sink with database configuration.

        Args:
            session_factory (sessionmaker[SQLModelSession]): SQLModel session factory.
        """
        self.session_factory = session_factory

    def __call__(self, message: Message) -> None:
        """Process and store a log record.

        Handler calling this should be configured with ``serialize=True``.
        """
        serialized = json.loads(message)
        record = LogRecord(
            timestamp=message.record["time"].astimezone(UTC),
            level=LogLevel(message.record["level"].name),
            message=message.record["message"],
            module=message.record["module"],
            name=message.record["name"],  # pyright: ignore [reportCallIssue]
            function=message.record["function"],
            line=message.record["line"],
            extra=serialized["record"].get("extra", {}),
            process=f"{message.record['process'].name}:{message.record['process'].id}",  # pyright: ignore [reportCallIssue]
            thread=f"{message.record['thread'].name}:{message.record['thread'].id}",  # pyright: ignore [reportCallIssue]
            article_id=_as_article_id(message.record["extra"].get("article_id")),
            exception=serialized["record"].get("exception"),
            record=serialized,  # pyright: ignore [reportCallIssue]
        )

        with self.session_factory.begin() as session:
            session.add(record)


def configure_logging(
    settings: Settings,
    *,
    session_factory: sessionmaker[SQLModelSession] | None = None,
    engine: Engine | None = None,
) -> None:
    """Configure loguru handlers and logfire instrumentation.

    Handlers: colorized stderr at ``settings.log_level``, a serialized JSON log file
    if ``settings.log_file`` is set, the database sink if a session factory is given
    and ``settings.log_to_db``, and logfire. Logfire only sends data when a token is
    configured.
    """
    logfire.configure(
        service_name="sr-council",
        environment=settings.env,
        send_to_logfire="if-token-present",
        console=False,
    )
    logfire.instrument_httpx()
    if engine is not None:
        logfire.instrument_sqlalchemy(engine=engine)

    level = LogLevel.DEBUG if settings.debug else settings.log_level

    handlers: list[dict[str, t.Any]] = [
        dict(  # noqa: C408
            sink=sys.stderr,
            level=level.value,
            format=LOGGING_FORMAT,
            enqueue=True,
            catch=True,
            colorize=True,
        ),
    ]
    if settings.log_file:
        handlers.append(
            dict(  # noqa: C408
                sink=settings.log_file,
                level="DEBUG",
                enqueue=True,
                catch=True,
                serialize=True,
            )
        )
    if session_factory is not None and settings.log_to_db:
        handlers.append(
            dict(  # noqa: C408
                sink=DatabaseLogSink(session_factory),
                level="INFO",
                enqueue=True,
                catch=True,
                serialize=True,
            )
        )
    handlers.append(t.cast("dict[str, t.Any]", logfire.loguru_handler()))

    logger.configure(handlers=handlers)  # pyright: ignore [reportArgumentType]
    logger.info("Logging initialized.")
