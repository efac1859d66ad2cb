"""Inference collaborators and prompt formatting.

Usage:
    from minichat.llm import create_inference_client

    client = create_inference_client()
    result = client.complete(prompt)
"""

import logging

from minichat.llm.base import CompletionResult, InferenceClient
from minichat.llm.llamacpp import LlamaCppClient, SamplingParams

logger = logging.getLogger(__name__)


def create_inference_client() -> InferenceClient:
    """Build the llama.cpp client described by the global settings."""
    from minichat.config import settings

    params = SamplingParams(
        temperature=settings.llm_temperature,
        top_p=settings.llm_top_p,
        min_p=settings.llm_min_p,
        top_k=settings.llm_top_k,
        n_predict=settings.llm_n_predict,
        repeat_penalty=settings.llm_repeat_penalty,
        presence_penalty=settings.llm_presence_penalty,
        frequency_penalty=settings.llm_frequency_penalty,
    )
    logger.debug(f"Using inference server at {settings.llm_base_url}")
    return LlamaCppClient(
        base_url=settings.llm_base_url,
        params=params,
        timeout=settings.llm_timeout,
    )


__all__ = [
    "CompletionResult",
    "InferenceClient",
    "LlamaCppClient",
    "SamplingParams",
    "create_inference_client",
]
