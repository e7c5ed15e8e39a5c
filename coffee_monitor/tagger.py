from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Sequence, TypeVar

from google import genai
from google.genai import types
from pydantic import ValidationError

from .models import CoffeeTags, TagsBatchResult
from .prompts import build_batch_tagging_prompt, build_tagging_prompt
from .text_utils import strip_code_fences

DEFAULT_TAGGING_MODEL = "gemini-2.5-flash-lite"
DEFAULT_BATCH_SIZE = 20
QUOTA_MARKERS = ("quota", "429", "RESOURCE_EXHAUSTED")


class Describable(Protocol):
    name: str
    description: str


P = TypeVar("P", bound=Describable)


class TaggingQuotaExceeded(RuntimeError):
    """Raised when the model provider refuses further requests.

    ``completed`` holds the (item, tags) pairs finished before the refusal.
    """

    def __init__(self, message: str, completed: list[tuple[Any, CoffeeTags]]) -> None:
        super().__init__(message)
        self.completed = completed


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def response_text(response: Any) -> str:
    """Text of a generate_content response, joined from parts when ``.text`` is empty."""
    text = _field(response, "text")
    if isinstance(text, str) and text.strip():
        return text.strip()
    candidates = _field(response, "candidates") or []
    if not candidates:
        return ""
    parts = _field(_field(candidates[0], "content"), "parts") or []
    texts = [_field(part, "text") for part in parts]
    return "\n".join(t.strip() for t in texts if isinstance(t, str) and t.strip())


def is_quota_error(exc: BaseException) -> bool:
    if 429 in (_field(exc, "code"), _field(exc, "status_code")):
        return True
    message = str(exc)
    return any(marker in message for marker in QUOTA_MARKERS)


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in {"null", "none", "unknown"}:
        return None
    return text


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _confidence(value: Any) -> float:
    try:
        number = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    return min(100.0, max(0.0, number))


def normalize_tags(raw: Any, tagged_at: Optional[str] = None) -> CoffeeTags:
    """Coerce one model-produced attribute object into ``CoffeeTags``.

    Anything that is not an object yields the empty bag.
    """
    if not isinstance(raw, dict):
        return CoffeeTags.empty()
    data = {
        "country_of_origin": _optional_text(raw.get("country_of_origin")),
        "region": _optional_text(raw.get("region")),
        "process_method": _optional_text(raw.get("process_method")),
        "roast_level": _optional_text(raw.get("roast_level")),
        "variety": _optional_text(raw.get("variety")),
        "is_organic": raw.get("is_organic") is True,
        "is_fair_trade": raw.get("is_fair_trade") is True,
        "is_decaf": raw.get("is_decaf") is True,
        "flavor_notes": _string_list(raw.get("flavor_notes")),
        "certifications": _string_list(raw.get("certifications")),
        "confidence": _confidence(raw.get("confidence")),
        "tagged_at": tagged_at or datetime.now(timezone.utc).isoformat(),
    }
    try:
        return CoffeeTags.model_validate(data)
    except ValidationError:
        return CoffeeTags.empty()


def parse_batch_response(text: str, expected: int, tagged_at: str) -> list[CoffeeTags]:
    data = json.loads(strip_code_fences(text))
    if isinstance(data, list):
        data = {"products": data}
    elif isinstance(data, dict) and "products" not in data and expected == 1:
        data = {"products": [data]}
    batch = TagsBatchResult.model_validate(data)
    tags = [normalize_tags(item, tagged_at) for item in batch.products]
    if len(tags) < expected:
        tags.extend(CoffeeTags.empty() for _ in range(expected - len(tags)))
    return tags[:expected]


class CoffeeTagger:
    def __init__(
        self,
        client: Optional[genai.Client],
        logger: logging.Logger,
        model: str = DEFAULT_TAGGING_MODEL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        timeout_s: float = 120.0,
    ) -> None:
        self._client = client
        self._logger = logger
        self.model = model
        self.batch_size = max(1, batch_size)
        self.timeout_s = timeout_s

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def _config(self) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            response_mime_type="application/json",
            temperature=0.1,
        )

    async def _generate(self, prompt: str) -> str:
        request = self._client.aio.models.generate_content(
            model=self.model, contents=prompt, config=self._config()
        )
        response = await asyncio.wait_for(request, timeout=self.timeout_s or None)
        usage = _field(response, "usage_metadata")
        if usage is not None:
            self._logger.debug(
                "Gemini tagging usage: total_tokens=%s", _field(usage, "total_token_count")
            )
        return response_text(response)

    async def tag_product(self, name: str, description: str = "") -> CoffeeTags:
        if not self.enabled:
            return CoffeeTags.empty()
        try:
            text = await self._generate(build_tagging_prompt(name, description))
            return normalize_tags(
                json.loads(strip_code_fences(text)),
                datetime.now(timezone.utc).isoformat(),
            )
        except asyncio.TimeoutError:
            self._logger.warning(
                "Gemini tagging timed out for %s after %.1fs", name, self.timeout_s
            )
        except Exception as exc:
            if is_quota_error(exc):
                raise TaggingQuotaExceeded(
                    f"Gemini quota or rate limit exceeded: {exc}", []
                ) from exc
            self._logger.warning("Gemini tagging failed for %s: %s", name, exc)
        return CoffeeTags.empty()

    async def tag_products(self, items: Sequence[P]) -> list[tuple[P, CoffeeTags]]:
        """Tag ``items`` batch by batch, pairing each item with its tags.

        A quota refusal stops the run and raises ``TaggingQuotaExceeded``
        carrying the pairs completed so far.
        """
        if not self.enabled:
            return [(item, CoffeeTags.empty()) for item in items]
        results: list[tuple[P, CoffeeTags]] = []
        for start in range(0, len(items), self.batch_size):
            batch = list(items[start : start + self.batch_size])
            try:
                tags = await self._tag_batch(batch)
            except TaggingQuotaExceeded as exc:
                raise TaggingQuotaExceeded(str(exc), results) from exc
            results.extend(zip(batch, tags))
            self._logger.info(
                "Tagged %d/%d products with %s", len(results), len(items), self.model
            )
        return results

    async def _tag_batch(self, batch: list[P]) -> list[CoffeeTags]:
        prompt = build_batch_tagging_prompt(
            [(item.name, item.description or "") for item in batch]
        )
        try:
            text = await self._generate(prompt)
            return parse_batch_response(
                text, len(batch), datetime.now(timezone.utc).isoformat()
            )
        except asyncio.TimeoutError:
            self._logger.warning(
                "Gemini batch tagging timed out after %.1fs (%d products)",
                self.timeout_s,
                len(batch),
            )
        except (json.JSONDecodeError, ValidationError) as exc:
            self._logger.warning(
                "Gemini batch tagging returned malformed output (%d products): %s",
                len(batch),
                exc,
            )
        except Exception as exc:
            if is_quota_error(exc):
                raise TaggingQuotaExceeded(
                    f"Gemini quota or rate limit exceeded: {exc}", []
                ) from exc
            self._logger.warning("Gemini batch tagging failed: %s", exc)
        return [CoffeeTags.empty() for _ in batch]


def build_tagger(
    api_key: Optional[str],
    logger: logging.Logger,
    model: str = DEFAULT_TAGGING_MODEL,
    batch_size: int = DEFAULT_BATCH_SIZE,
    timeout_s: float = 120.0,
) -> CoffeeTagger:
    if not api_key:
        logger.info("No GEMINI_API_KEY found; AI tagging disabled.")
        return CoffeeTagger(None, logger, model, batch_size, timeout_s)
    return CoffeeTagger(genai.Client(api_key=api_key), logger, model, batch_size, timeout_s)
