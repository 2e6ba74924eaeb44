from __future__ import annotations

import asyncio
import json
import logging
from typing import TypeVar

from google import genai
from google.genai import types as genai_types
from pydantic import BaseModel

from targetgraph.config import settings
from targetgraph.services.rate_limit import RateLimitGuard

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_genai_client: genai.Client | None = None


class LlmUnavailableError(RuntimeError):
    pass


def llm_configured() -> bool:
    if not settings.LLM_ENABLED:
        return False
    return bool(
        settings.GEMINI_API_KEY.strip()
        or settings.GOOGLE_CLOUD_API_KEY.strip()
        or settings.GCP_PROJECT_ID.strip()
    )


def _get_genai_client() -> genai.Client:
    global _genai_client
    if _genai_client is None:
        if settings.GEMINI_API_KEY.strip():
            _genai_client = genai.Client(api_key=settings.GEMINI_API_KEY.strip())
        elif settings.GOOGLE_CLOUD_API_KEY.strip():
            _genai_client = genai.Client(vertexai=True, api_key=settings.GOOGLE_CLOUD_API_KEY.strip())
        else:
            _genai_client = genai.Client(
                vertexai=True,
                project=settings.GCP_PROJECT_ID,
                location=settings.GCP_REGION,
            )
    return _genai_client


def _model_candidates() -> list[str]:
    seen: set[str] = set()
    candidates: list[str] = []
    for name in [settings.GEMINI_MODEL, *settings.GEMINI_MODEL_FALLBACKS.split(",")]:
        name = name.strip()
        if name and name not in seen:
            seen.add(name)
            candidates.append(name)
    return candidates


async def _generate(
    schema_model: type[ModelT],
    system_prompt: str,
    user_prompt: str,
    guard: RateLimitGuard,
) -> ModelT:
    client = _get_genai_client()
    config = genai_types.GenerateContentConfig(
        temperature=0.0,
        system_instruction=system_prompt,
        response_mime_type="application/json",
        response_json_schema=schema_model.model_json_schema(),
    )

    last_error: Exception | None = None
    for model_name in _model_candidates():
        try:
            response = await asyncio.to_thread(
                client.models.generate_content,
                model=model_name,
                contents=[
                    genai_types.Content(
                        role="user",
                        parts=[genai_types.Part(text=user_prompt)],
                    )
                ],
                config=config,
            )
        except Exception as exc:
            if guard.record_limit(exc):
                raise
            last_error = exc
            logger.warning("Gemini model unavailable: %s (%s)", model_name, exc)
            continue

        payload = json.loads((response.text or "").strip())
        return schema_model.model_validate(payload)

    if last_error is not None:
        raise last_error
    raise LlmUnavailableError("No Gemini model candidates configured")


async def structured_completion(
    schema_model: type[ModelT],
    system_prompt: str,
    user_prompt: str,
    *,
    guard: RateLimitGuard,
    timeout: float,
) -> ModelT:
    """One schema-constrained Gemini completion, validated into ``schema_model``.

    Raises when the model is not configured, the guard is cooling down, the
    call times out or the reply does not validate; callers own the fallback.
    """
    if not llm_configured():
        raise LlmUnavailableError("Gemini credentials are not configured")
    if guard.is_limited():
        raise LlmUnavailableError(
            f"Gemini calls paused for {guard.remaining_seconds():.1f}s after a rate limit"
        )
    return await asyncio.wait_for(
        _generate(schema_model, system_prompt, user_prompt, guard),
        timeout=timeout,
    )
