"""Single-model structured data extraction."""

from __future__ import annotations

import typing as t

from loguru import logger

from sr_council.app.parsing import parse_as
from sr_council.app.prompts import render_extraction_prompt
from sr_council.core.constants import (
    DEFAULT_EXTRACTION_MODEL,
    EXTRACTION_CONFIDENCE,
    LOCAL_PROVIDER,
)
from sr_council.core.exceptions import (
    InsufficientContentError,
    ProviderUnavailableError,
)
from sr_council.core.schemas import ExtractedData, ExtractionResult
from sr_council.core.stats import derive_missing_stats
from sr_council.core.types import ProviderMode

if t.TYPE_CHECKING:
    from sr_council.app.gateway import TextGenerator
    from sr_council.core.schemas import ArticleData

EXTRACTION_TEMPERATURE = 0.2


def derive_outcome_stats(data: ExtractedData) -> ExtractedData:
    """Back-fill missing SE/SD of every primary and secondary outcome result."""
    return data.model_copy(
        update={
            "primary_outcomes": [
                derive_missing_stats(o) for o in data.primary_outcomes
            ],
            "secondary_outcomes": [
                derive_missing_stats(o) for o in data.secondary_outcomes
            ],
        }
    )


class ExtractionCoordinator:
    """Extracts study data with the single most capable model.

    There is no council for extraction. The output must parse into `ExtractedData`,
    otherwise `InvalidModelOutputError` propagates.
    """

    def __init__(
        self,
        gateway: TextGenerator,
        model: str = DEFAULT_EXTRACTION_MODEL,
        *,
        temperature: float = EXTRACTION_TEMPERATURE,
    ) -> None:
        self.gateway = gateway
        self.model = model
        self.temperature = temperature

    async def extract_data(
        self, article: ArticleData, mode: ProviderMode = ProviderMode.LOCAL
    ) -> ExtractionResult:
        """Extract structured data from one article.

        Raises:
            InsufficientContentError: Article has neither abstract nor full text.
            ProviderUnavailableError: Cloud requested or gateway not connected.
            ModelError: The model call failed.
            InvalidModelOutputError: Output is not a valid `ExtractedData` object.
        """
        log = logger.bind(article_id=article.id, model=self.model)

        if not article.has_content:
            msg = f"Article {article.id} has no abstract or full text to extract from"
            raise InsufficientContentError(msg)
        if mode is ProviderMode.CLOUD:
            msg = "Cloud inference is not implemented, use local mode"
            raise ProviderUnavailableError(msg)
        if not self.gateway.is_connected():
            msg = "Ollama is not connected. Start Ollama and check the connection."
            raise ProviderUnavailableError(msg)

        rendered = render_extraction_prompt(article)
        raw = await self.gateway.generate(
            self.model, rendered.prompt, rendered.system, self.temperature
        )
        data = derive_outcome_stats(parse_as(raw, ExtractedData))
        log.info(
            "Extracted {} primary and {} secondary outcomes",
            len(data.primary_outcomes),
            len(data.secondary_outcomes),
        )
        return ExtractionResult(
            extracted_data=data,
            confidence=EXTRACTION_CONFIDENCE,
            provider=LOCAL_PROVIDER,
            cost_usd=0.0,
        )
