"""Model price table and cost computation.

A static table covers the common models. An optional remote table in the
models.dev shape can be fetched to extend it:

    {"<provider>": {"models": {"<model>": {"cost": {"input": 1.25,
        "output": 10, "cache_read": 0.125, "cache_write": 0}}}}}

Prices are USD per million tokens.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from session_meter.logging import get_logger
from session_meter.models import TokenUsage

logger = get_logger("pricing")

MILLION = 1_000_000


@dataclass(frozen=True)
class ModelPricing:
    input_per_1m: float
    output_per_1m: float
    cache_read_per_1m: float = 0.0
    cache_write_per_1m: float = 0.0
    reasoning_per_1m: float | None = None  # None bills reasoning at the output rate


PRICING: dict[str, ModelPricing] = {
    "claude-opus-4-6": ModelPricing(15, 75, 1.5, 18.75),
    "claude-opus-4-5-20251101": ModelPricing(15, 75, 1.5, 18.75),
    "claude-opus-4-1": ModelPricing(15, 75, 1.5, 18.75),
    "claude-sonnet-4-5": ModelPricing(3, 15, 0.3, 3.75),
    "claude-sonnet-4-20250514": ModelPricing(3, 15, 0.3, 3.75),
    "claude-3-5-sonnet-20241022": ModelPricing(3, 15, 0.3, 3.75),
    "claude-haiku-4-5": ModelPricing(1, 5, 0.1, 1.25),
    "claude-3-5-haiku-20241022": ModelPricing(0.8, 4, 0.08, 1),
    "gpt-5": ModelPricing(1.25, 10, 0.125, 0),
    "gpt-5-codex": ModelPricing(1.25, 10, 0.125, 0),
    "gpt-5.2-codex": ModelPricing(1.25, 10, 0.125, 0),
    "gpt-4o": ModelPricing(2.5, 10, 1.25, 0),
    "o1": ModelPricing(15, 60, 7.5, 0),
    "o3": ModelPricing(10, 40, 2.5, 0),
    "gemini-2.5-pro": ModelPricing(1.25, 10, 0.315, 4.5),
    "gemini-2.5-flash": ModelPricing(0.15, 0.6, 0.0375, 1),
}

FREE_MODEL_PRICING = ModelPricing(0, 0, 0, 0)

PROVIDER_PREFIXES = ("anthropic/", "openai/", "google/", "azure/", "openrouter/openai/", "openrouter/")


def is_openrouter_free_model(model: str) -> bool:
    normalized = model.strip().lower()
    return normalized == "openrouter/free" or (normalized.startswith("openrouter/") and normalized.endswith(":free"))


def find_by_prefix(model: str, table: dict[str, ModelPricing]) -> ModelPricing | None:
    """Longest key that equals model or is a dash-delimited prefix of it.

    "claude-sonnet-4-20250514-v2" resolves to "claude-sonnet-4-20250514",
    but "foo-gpt-5" never resolves to "gpt-5".
    """
    for key in sorted(table, key=len, reverse=True):
        if model == key or model.startswith(f"{key}-"):
            return table[key]
    return None


def strip_provider(model: str) -> str:
    for prefix in PROVIDER_PREFIXES:
        if model.startswith(prefix):
            return model[len(prefix):]
    return model


def _per_million(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def parse_remote_table(payload: Any) -> dict[str, ModelPricing]:
    """Flatten a models.dev payload into {model or provider/model: pricing}."""
    table: dict[str, ModelPricing] = {}
    if not isinstance(payload, dict):
        return table

    for provider_id, provider in payload.items():
        if not isinstance(provider, dict):
            continue
        models = provider.get("models")
        if not isinstance(models, dict):
            continue
        for model_id, model in models.items():
            cost = model.get("cost") if isinstance(model, dict) else None
            if not isinstance(cost, dict):
                continue
            input_price = _per_million(cost.get("input"))
            output_price = _per_million(cost.get("output"))
            if input_price is None and output_price is None:
                continue
            pricing = ModelPricing(
                input_per_1m=input_price or 0.0,
                output_per_1m=output_price or 0.0,
                cache_read_per_1m=_per_million(cost.get("cache_read")) or 0.0,
                cache_write_per_1m=_per_million(cost.get("cache_write")) or 0.0,
                reasoning_per_1m=_per_million(cost.get("reasoning")),
            )
            name = str(model_id).lower()
            table[f"{str(provider_id).lower()}/{name}"] = pricing
            # First provider to publish a bare model id keeps it
            table.setdefault(name, pricing)

    return table


class PricingResolver:
    """Resolves per-model prices and computes event costs.

    Holds the remote table, the resolution cache, and the refresh/cooldown
    clock. One instance per orchestrator (or per test).
    """

    def __init__(
        self,
        url: str | None = None,
        refresh_interval_seconds: float = 6 * 60 * 60,
        cooldown_seconds: float = 600.0,
        timeout_seconds: float = 2.5,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
        static_table: dict[str, ModelPricing] | None = None,
    ) -> None:
        self._url = url
        self._refresh_interval = refresh_interval_seconds
        self._cooldown = cooldown_seconds
        self._timeout = timeout_seconds
        self._client = client
        self._clock = clock
        self._static = dict(static_table if static_table is not None else PRICING)
        self._remote: dict[str, ModelPricing] = {}
        self._cache: dict[str, ModelPricing | None] = {}
        self._last_success: float | None = None
        self._last_failure: float | None = None

    @property
    def has_remote_table(self) -> bool:
        return bool(self._remote)

    def should_refresh(self) -> bool:
        if not self._url:
            return False
        now = self._clock()
        if self._last_failure is not None and now - self._last_failure < self._cooldown:
            return False
        if self._last_success is not None and now - self._last_success < self._refresh_interval:
            return False
        return True

    def refresh(self) -> bool:
        """Fetch the remote price table. Best-effort: never raises.

        Returns:
            True if a new table was installed
        """
        if not self.should_refresh():
            return False

        try:
            payload = self._fetch()
            table = parse_remote_table(payload)
            if not table:
                raise ValueError("remote pricing payload contained no usable model rates")
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError, ValueError):
            self._last_failure = self._clock()
            logger.warning(
                "Pricing refresh failed, using local table for %ds: url=%s",
                self._cooldown,
                self._url,
                exc_info=True,
            )
            return False

        self._remote = table
        self._cache = {}
        self._last_success = self._clock()
        self._last_failure = None
        logger.info("Pricing table refreshed: models=%d", len(table))
        return True

    def _fetch(self) -> Any:
        if self._client is not None:
            response = self._client.get(self._url, timeout=self._timeout)
        else:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.get(self._url)
        response.raise_for_status()
        return response.json()

    def resolve(self, model: str | None) -> ModelPricing | None:
        """Find pricing for a model name, or None when unknown."""
        if not model:
            return None
        normalized = model.strip().lower()
        if not normalized:
            return None
        if normalized in self._cache:
            return self._cache[normalized]

        resolved = self._lookup(normalized)
        self._cache[normalized] = resolved
        return resolved

    def _lookup(self, model: str) -> ModelPricing | None:
        if is_openrouter_free_model(model):
            return FREE_MODEL_PRICING

        bare = strip_provider(model)
        for table in (self._remote, self._static):
            if not table:
                continue
            if model in table:
                return table[model]
            if bare in table:
                return table[bare]

        for table in (self._remote, self._static):
            if not table:
                continue
            match = find_by_prefix(bare, table)
            if match is not None:
                return match
        return None

    def cost(self, tokens: TokenUsage | None, model: str | None) -> float | None:
        """Cost in USD for a token usage under a model, None if unresolvable."""
        if tokens is None or not model:
            return None
        pricing = self.resolve(model)
        if pricing is None:
            return None

        reasoning_rate = pricing.reasoning_per_1m
        if reasoning_rate is None:
            reasoning_rate = pricing.output_per_1m

        return (
            tokens.input_tokens * pricing.input_per_1m
            + tokens.output_tokens * pricing.output_per_1m
            + tokens.cache_read_tokens * pricing.cache_read_per_1m
            + tokens.cache_write_tokens * pricing.cache_write_per_1m
            + tokens.reasoning_tokens * reasoning_rate
        ) / MILLION
