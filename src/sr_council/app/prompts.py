"""Prompt templates for council screening and data extraction.

Both prompts are plain ``(system, human)`` chat templates. Literal JSON braces in the
templates are doubled for f-string formatting.
"""

from __future__ import annotations

import typing as t

from langchain_core.prompts import ChatPromptTemplate

if t.TYPE_CHECKING:
    from sr_council.core.schemas import ArticleData, PICOCriteria, ReviewContext


class RenderedPrompt(t.NamedTuple):
    """System and user prompt ready for `OllamaGateway.generate`."""

    system: str
    prompt: str


screening_system_prompt_text = """\
You are an expert systematic review screener assisting medical researchers.

Your task is to determine if a full-text article should be INCLUDED or EXCLUDED from \
a systematic review based on PICO criteria.

CRITICAL RULES:
1. BASE your decision ONLY on the PICO criteria provided
2. If the article meets ALL inclusion criteria → INCLUDE
3. If the article violates ANY exclusion criterion → EXCLUDE
4. When uncertain, err on the side of INCLUSION for manual review
5. Provide SPECIFIC reasoning citing article text
6. Be conservative but fair

OUTPUT FORMAT: Respond ONLY with valid JSON matching this schema:
{{
  "decision": "include" | "exclude",
  "confidence": 0-100,
  "reasoning": "Specific justification with quotes from article",
  "pico_alignment": {{
    "population": "yes | no | partial - explanation",
    "intervention": "yes | no | partial - explanation",
    "comparison": "yes | no | partial - explanation",
    "outcomes": "yes | no | partial - explanation"
  }},
  "exclusion_criteria_violated": ["criterion1", "criterion2"] | []
}}"""

screening_task_prompt_text = """\
# Systematic Review Criteria

## Research Question
{research_question}

## PICO Criteria
- **Population:** {population}
- **Intervention:** {intervention}
- **Comparison:** {comparison}
- **Outcomes:** {outcomes}

## Inclusion Criteria
{inclusion_criteria}

## Exclusion Criteria
{exclusion_criteria}

---

# Article to Screen

## Title
{title}

## Authors
{authors}

## Journal & Year
{journal}, {year}

## Abstract
{abstract}

## Methods Section
{methods}

## Results Section (abbreviated)
{results_excerpt}

---

**Task:** Based on the criteria above, should this article be INCLUDED or EXCLUDED? \
Provide your decision as JSON only."""

screening_prompt = ChatPromptTemplate.from_messages(
    [("system", screening_system_prompt_text), ("human", screening_task_prompt_text)]
)

extraction_system_prompt_text = """\
You are an expert data extractor for systematic reviews and meta-analyses.

Your task is to extract structured data from a medical research article, focusing on:
1. PICO elements (Population, Intervention, Comparison, Outcomes)
2. Study design and methodology
3. Sample sizes and participant characteristics
4. Primary and secondary outcomes with statistical results
5. Risk of bias assessment (Cochrane RoB 2 framework)

CRITICAL RULES:
1. Extract ONLY information explicitly stated in the article
2. For numerical data, copy EXACT values (don't round)
3. If information is missing, use null (do not guess)
4. For statistics, extract: mean, SD, n, p-values, effect sizes, confidence intervals
5. Use standard medical abbreviations (RCT, OR, RR, SMD, etc.)
6. If multiple timepoints exist, extract the PRIMARY endpoint unless specified otherwise

OUTPUT FORMAT: Respond ONLY with valid JSON matching the schema provided."""

extraction_task_prompt_text = """\
# Article for Data Extraction

## Title
{title}

## Authors & Journal
{authors} | {journal} ({year})

## Full Text

### Abstract
{abstract}

### Methods
{methods}

### Results
{results}

### Discussion (if relevant for conclusions)
{discussion_excerpt}

---

**Task:** Extract all relevant data from this article and return as structured JSON \
following this schema:

```json
{{
  "population": {{
    "description": "string",
    "sample_size": number,
    "demographics": {{
      "mean_age": number | null,
      "gender_distribution": "string" | null,
      "inclusion_criteria": "string"
    }}
  }},
  "intervention": {{
    "name": "string",
    "description": "string",
    "dosage": "string" | null,
    "duration": "string" | null,
    "delivery_method": "string" | null
  }},
  "comparison": {{
    "name": "string",
    "description": "string",
    "dosage": "string" | null,
    "duration": "string" | null
  }},
  "study_design": "RCT" | "Crossover RCT" | "Cluster RCT" | "Cohort" | "Case-Control" | "Meta-Analysis" | "other",
  "duration_weeks": number | null,
  "primary_outcomes": [
    {{
      "outcome": "string",
      "measurement_tool": "string",
      "timepoint": "string",
      "intervention_mean": number,
      "intervention_sd": number,
      "intervention_n": number,
      "control_mean": number,
      "control_sd": number,
      "control_n": number,
      "p_value": number | null,
      "std_error": number | null,
      "effect_size": number | null,
      "effect_size_type": "SMD" | "MD" | "RR" | "OR" | "HR" | null,
      "confidence_interval": [number, number] | null
    }}
  ],
  "secondary_outcomes": [...],
  "risk_of_bias": {{
    "random_sequence_generation": "low" | "high" | "unclear",
    "allocation_concealment": "low" | "high" | "unclear",
    "blinding_participants": "low" | "high" | "unclear",
    "blinding_assessors": "low" | "high" | "unclear",
    "incomplete_outcome": "low" | "high" | "unclear",
    "selective_reporting": "low" | "high" | "unclear",
    "other_bias": "low" | "high" | "unclear"
  }},
  "notes": "string - any important caveats or additional context"
}}
```

Extract the data now. Return ONLY the JSON, no explanation."""

extraction_prompt = ChatPromptTemplate.from_messages(
    [
        ("system", extraction_system_prompt_text),
        ("human", extraction_task_prompt_text),
    ]
)

NOT_AVAILABLE = "N/A"


def _or_na(value: object) -> str:
    if value is None:
        return NOT_AVAILABLE
    text = str(value).strip()
    return text or NOT_AVAILABLE


def _section(value: str | None, full_text: str | None, start: int, end: int) -> str:
    """Section text, or a slice of the full text when the section is missing."""
    if value and value.strip():
        return value
    return _or_na((full_text or "")[start:end])


def _bullets(items: t.Iterable[str]) -> str:
    return "\n".join(f"- {item}" for item in items) or NOT_AVAILABLE


def _render(prompt: ChatPromptTemplate, **kwargs: t.Any) -> RenderedPrompt:
    system, human = prompt.format_messages(**kwargs)
    return RenderedPrompt(system=str(system.content), prompt=str(human.content))


def render_screening_prompt(
    article: ArticleData, pico: PICOCriteria, review: ReviewContext
) -> RenderedPrompt:
    """Render the screening prompt for one article.

    Missing abstract, methods and results fall back to the first 500, the next 1000
    and the next 1000 characters of the full text respectively.
    """
    return _render(
        screening_prompt,
        research_question=review.research_question,
        population=pico.population,
        intervention=pico.intervention,
        comparison=pico.comparison,
        outcomes=pico.outcomes,
        inclusion_criteria=_bullets(review.inclusion_criteria),
        exclusion_criteria=_bullets(review.exclusion_criteria),
        title=_or_na(article.title),
        authors=_or_na(article.authors),
        journal=_or_na(article.journal),
        year=_or_na(article.year),
        abstract=_section(article.abstract, article.full_text, 0, 500),
        methods=_section(article.methods, article.full_text, 500, 1500),
        results_excerpt=_section(article.results, article.full_text, 1500, 2500),
    )


def render_extraction_prompt(article: ArticleData) -> RenderedPrompt:
    """Render the extraction prompt. The discussion excerpt is the first 1000
    characters of the full text.
    """
    return _render(
        extraction_prompt,
        title=_or_na(article.title),
        authors=_or_na(article.authors),
        journal=_or_na(article.journal),
        year=_or_na(article.year),
        abstract=_or_na(article.abstract),
        methods=_or_na(article.methods),
        results=_or_na(article.results),
        discussion_excerpt=_or_na((article.full_text or "")[:1000]),
    )
