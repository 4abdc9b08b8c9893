"""AI Council screening.

Three local models screen the same article in parallel. Their votes are reconciled
into one decision:

- decision is include only if include votes outnumber exclude votes, ties exclude;
- consensus is unanimous if all votes agree, otherwise ``2-1``;
- confidence is the mean confidence of the winning side times the consensus
  multiplier (1.0 unanimous, 0.85 majority), rounded half up.

A model that fails or answers with unusable output still casts a vote: exclude with
confidence 0. The council therefore always returns one vote per panel model, in panel
order, and never raises for per-model failures.

Examples:
    ```python
    council = AICouncil(gateway)
    await gateway.check_connection()
    result = await council.screen_article(article, pico)
    result.decision, result.consensus_type, result.confidence
    ```
"""

from __future__ import annotations

import asyncio
import statistics
import time
import typing as t

from loguru import logger

from sr_council.app.parsing import parse_as
from sr_council.app.prompts import RenderedPrompt, render_screening_prompt
from sr_council.core.constants import COUNCIL_PROVIDER, DEFAULT_COUNCIL_MODELS
from sr_council.core.exceptions import (
    InsufficientContentError,
    InvalidCriteriaError,
    InvalidModelOutputError,
    ModelError,
    ProviderUnavailableError,
)
from sr_council.core.schemas import (
    COUNCIL_SIZE,
    ModelVote,
    ReviewContext,
    ScreeningResponse,
    ScreeningResult,
    round_half_up,
)
from sr_council.core.types import (
    ConsensusType,
    CouncilState,
    ProviderMode,
    ScreeningDecisionType,
)

if t.TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from loguru import Logger

    from sr_council.app.gateway import TextGenerator
    from sr_council.core.schemas import ArticleData, PICOCriteria

SCREENING_TEMPERATURE = 0.3


def failed_vote(model: str, error: Exception) -> ModelVote:
    """Synthetic vote recorded for a model that could not vote."""
    return ModelVote(
        model=model,
        decision=ScreeningDecisionType.EXCLUDE,
        confidence=0,
        reasoning=f"Model error: {error}",
        latency_ms=0,
        error=str(error),
    )


def reconcile_votes(votes: Sequence[ModelVote]) -> ScreeningResult:
    """Reconcile council votes into a screening decision. Deterministic.

    Raises:
        ValueError: If ``votes`` does not hold one vote per panel model.
    """
    if len(votes) != COUNCIL_SIZE:
        msg = f"Cannot reconcile {len(votes)} votes, expected {COUNCIL_SIZE}"
        raise ValueError(msg)

    include = [v for v in votes if v.decision is ScreeningDecisionType.INCLUDE]
    exclude = [v for v in votes if v.decision is ScreeningDecisionType.EXCLUDE]

    if len(include) > len(exclude):
        decision, winning = ScreeningDecisionType.INCLUDE, include
    else:
        decision, winning = ScreeningDecisionType.EXCLUDE, exclude

    consensus = (
        ConsensusType.UNANIMOUS if len(winning) == len(votes) else ConsensusType.MAJORITY
    )
    mean_confidence = statistics.fmean(v.confidence for v in winning)
    confidence = min(
        100, max(0, round_half_up(mean_confidence * consensus.multiplier))
    )
    reasoning = (
        f"Council Decision ({consensus.value}): {len(include)} models voted INCLUDE, "
        f"{len(exclude)} voted EXCLUDE. {winning[0].reasoning or 'No reasoning provided.'}"
    )
    return ScreeningResult(
        decision=decision,
        confidence=confidence,
        reasoning=reasoning,
        consensus_type=consensus,
        model_votes=list(votes),
        provider=COUNCIL_PROVIDER,
        cost_usd=0.0,
    )


class AICouncil:
    """Panel of three local models screening articles against PICO criteria.

    Args:
        gateway: Inference gateway. Its cached connectivity gates every call.
        models: Panel model names, exactly three.
        temperature: Sampling temperature of every vote.
    """

    def __init__(
        self,
        gateway: TextGenerator,
        models: Sequence[str] = DEFAULT_COUNCIL_MODELS,
        *,
        temperature: float = SCREENING_TEMPERATURE,
    ) -> None:
        self.gateway = gateway
        self.temperature = temperature
        self._models: tuple[str, ...] = ()
        self.set_council_models(models)

    @property
    def models(self) -> tuple[str, ...]:
        return self._models

    def set_council_models(self, models: Sequence[str]) -> None:
        """Replace the panel. Takes effect for calls started afterwards.

        Raises:
            ValueError: Unless exactly three non-blank model names are given.
        """
        names = tuple(models)
        if len(names) != COUNCIL_SIZE or not all(n.strip() for n in names):
            msg = f"Council requires exactly {COUNCIL_SIZE} models, got {list(names)}"
            raise ValueError(msg)
        self._models = names
        logger.info("Council models set to {}", names)

    async def screen_article(
        self,
        article: ArticleData,
        pico: PICOCriteria,
        mode: ProviderMode = ProviderMode.LOCAL,
        *,
        review: ReviewContext | None = None,
        force_cloud: bool = False,
        on_state: Callable[[CouncilState], None] | None = None,
    ) -> ScreeningResult:
        """Screen one article with the full panel.

        Args:
            article: Article to screen, needs an abstract or full text.
            pico: PICO criteria, no blank fields.
            mode: Requested provider. Only local inference is implemented.
            review: Research question and criteria lists for the prompt.
            force_cloud: Request cloud inference regardless of ``mode``.
            on_state: Called on every state transition, in order.

        Raises:
            InsufficientContentError: Article has neither abstract nor full text.
            InvalidCriteriaError: A PICO field is blank.
            ProviderUnavailableError: Cloud requested, or the gateway is not
                connected. Nothing is dispatched.
        """
        log = logger.bind(article_id=article.id)

        if not article.has_content:
            msg = f"Article {article.id} has no abstract or full text to screen"
            raise InsufficientContentError(msg)
        if blank := pico.blank_fields():
            msg = f"PICO criteria fields must not be blank: {', '.join(blank)}"
            raise InvalidCriteriaError(msg)
        if mode is ProviderMode.CLOUD or force_cloud:
            msg = "Cloud inference is not implemented, use local mode"
            raise ProviderUnavailableError(msg)
        if not self.gateway.is_connected():
            msg = "Ollama is not connected. Start Ollama and check the connection."
            raise ProviderUnavailableError(msg)

        def transition(state: CouncilState) -> None:
            log.debug("Council state: {}", state)
            if on_state is not None:
                on_state(state)

        rendered = render_screening_prompt(article, pico, review or ReviewContext())
        models = self._models

        transition(CouncilState.DISPATCHING)
        tasks = [
            asyncio.create_task(self._vote(model, rendered, log), name=f"vote:{model}")
            for model in models
        ]

        transition(CouncilState.COLLECTING)
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        votes: list[ModelVote] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            votes.append(outcome)

        transition(CouncilState.RECONCILING)
        result = reconcile_votes(votes)

        transition(CouncilState.DONE)
        if result.is_degraded:
            log.warning(
                "Council decision based on {} of {} models",
                len(votes) - result.failed_votes,
                len(votes),
            )
        log.info(
            "Council decision {} ({}, confidence {})",
            result.decision,
            result.consensus_type,
            result.confidence,
        )
        return result

    async def _vote(self, model: str, rendered: RenderedPrompt, log: Logger) -> ModelVote:
        start = time.perf_counter()
        try:
            raw = await self.gateway.generate(
                model, rendered.prompt, rendered.system, self.temperature
            )
            response = parse_as(raw, ScreeningResponse)
        except (ModelError, InvalidModelOutputError) as exc:
            log.bind(model=model).warning("Council vote failed: {}", exc)
            return failed_vote(model, exc)

        latency_ms = int((time.perf_counter() - start) * 1000)
        log.bind(model=model).debug(
            "Vote {} at {} in {}ms", response.decision, response.confidence, latency_ms
        )
        return ModelVote(
            model=model,
            decision=response.decision,
            confidence=response.confidence,
            reasoning=response.reasoning,
            latency_ms=latency_ms,
        )
