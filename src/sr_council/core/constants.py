from __future__ import annotations

from dataclasses import dataclass

from sr_council.core.schemas import AvailableModel


@dataclass(frozen=True)
class ModelId:
    """Model names as known to Ollama."""

    llama_33_70b = "llama3.3:70b"
    mistral_large = "mistral-large"
    gemma2_27b = "gemma2:27b"
    llama_32_3b = "llama3.2:3b"
    qwen_25_14b = "qwen2.5:14b"


DEFAULT_COUNCIL_MODELS: tuple[str, str, str] = (
    ModelId.llama_33_70b,
    ModelId.mistral_large,
    ModelId.gemma2_27b,
)
"""Default screening panel, in declaration order."""

DEFAULT_EXTRACTION_MODEL = ModelId.llama_33_70b

COUNCIL_PROVIDER = "local-council"
"""Provider tag of council screening results."""

MANUAL_PROVIDER = "manual"
"""Provider tag of manual screening decisions."""

LOCAL_PROVIDER = "local"
"""Provider tag of local extraction results and usage logs."""

EXTRACTION_CONFIDENCE = 85
"""Placeholder extraction confidence until calibration is implemented."""

MANUAL_CONFIDENCE = 100

RECOMMENDED_MODELS: tuple[AvailableModel, ...] = (
    AvailableModel(
        name=ModelId.llama_33_70b,
        description="Meta Llama 3.3 70B - Flagship reasoning model",
        parameter_size="70B",
        recommended_for=("medical screening", "complex reasoning", "high accuracy"),
        requires_gpu=True,
        download_size="40 GB",
    ),
    AvailableModel(
        name=ModelId.mistral_large,
        description="Mistral Large - Strong generalist model",
        parameter_size="123B",
        recommended_for=("medical text", "analysis", "multilingual"),
        requires_gpu=True,
        download_size="68 GB",
    ),
    AvailableModel(
        name=ModelId.gemma2_27b,
        description="Google Gemma 2 27B - Efficient and capable",
        parameter_size="27B",
        recommended_for=("extraction", "classification", "structured output"),
        requires_gpu=False,
        download_size="16 GB",
    ),
    AvailableModel(
        name=ModelId.llama_32_3b,
        description="Meta Llama 3.2 3B - Fast and lightweight",
        parameter_size="3B",
        recommended_for=("testing", "low-resource systems"),
        requires_gpu=False,
        download_size="2 GB",
    ),
    AvailableModel(
        name=ModelId.qwen_25_14b,
        description="Qwen 2.5 14B - Excellent for medical domain",
        parameter_size="14B",
        recommended_for=("medical terminology", "scientific text"),
        requires_gpu=False,
        download_size="8 GB",
    ),
)
"""Static catalogue of models recommended for council use, with approximate sizes."""
