"""Locate and decode the JSON object in free-text model output.

Models asked for JSON still wrap it in prose or Markdown fences now and then. The
lookup order is:

1. The first fenced code block whose body starts with ``{`` or ``[``.
2. Otherwise the first balanced ``{...}`` span, ignoring braces inside string
   literals.
3. Otherwise the whole text.

JSON located by (1) or (2) that does not decode, or anything that decodes to a
non-object, raises `InvalidModelOutputError`. There is no repair and no retry.
"""

from __future__ import annotations

import json
import typing as t

import regex as re
from loguru import logger
from pydantic import BaseModel, ValidationError

from sr_council.core.exceptions import InvalidModelOutputError

_FENCED_BLOCK = re.compile(r"```[\w-]*[ \t]*\n?(?P<body>.*?)```", re.DOTALL)

# Recursive pattern: a brace pair containing non-brace non-quote runs, complete
# string literals, or nested balanced objects.
_BALANCED_OBJECT = re.compile(
    r"""
    \{
      (?:
          [^{}"]++
        | "(?:[^"\\]|\\.)*+"
        | (?0)
      )*+
    \}
    """,
    re.VERBOSE | re.DOTALL,
)


def _fenced_json(text: str) -> str | None:
    for match in _FENCED_BLOCK.finditer(text):
        body = match.group("body").strip()
        if body.startswith(("{", "[")):
            return body
    return None


def _balanced_object(text: str) -> str | None:
    match = _BALANCED_OBJECT.search(text)
    return match.group(0) if match else None


def parse_json_object(raw_text: str) -> dict[str, t.Any]:
    """Return the JSON object embedded in ``raw_text``.

    Raises:
        InvalidModelOutputError: If no JSON object can be located or decoded.

    Examples:
        >>> parse_json_object('Sure! ```json\\n{"decision": "include"}\\n```')
        {'decision': 'include'}
    """
    candidate = _fenced_json(raw_text)
    if candidate is None:
        candidate = _balanced_object(raw_text)
    located = candidate is not None
    if candidate is None:
        candidate = raw_text.strip()

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        if located:
            msg = f"Located JSON does not decode: {exc}"
        else:
            msg = "No JSON object found in model output"
        logger.bind(raw_text=raw_text[:500]).debug(msg)
        raise InvalidModelOutputError(msg, raw_text=raw_text) from exc

    if not isinstance(data, dict):
        msg = f"Model output is JSON {type(data).__name__}, expected an object"
        raise InvalidModelOutputError(msg, raw_text=raw_text)
    return data


def parse_as[M: BaseModel](raw_text: str, schema: type[M]) -> M:
    """Locate the JSON object in ``raw_text`` and validate it into ``schema``.

    Raises:
        InvalidModelOutputError: If no object is found or it does not validate.
    """
    data = parse_json_object(raw_text)
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        msg = f"Model output does not match {schema.__name__}: {exc.error_count()} validation error(s)"
        logger.bind(errors=exc.errors(include_url=False)).debug(msg)
        raise InvalidModelOutputError(msg, raw_text=raw_text) from exc
    except (ArithmeticError, TypeError) as exc:
        msg = f"Model output does not match {schema.__name__}: {exc!r}"
        logger.debug(msg)
        raise InvalidModelOutputError(msg, raw_text=raw_text) from exc
