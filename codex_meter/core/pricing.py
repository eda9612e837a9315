"""
Token Cost Engine
=================
Effective-dated price resolution for model usage.

Rules form one timeline per model prefix. A lookup picks the longest prefix
that matches the model name, then the newest rule on that prefix whose
``effective_from`` does not exceed the requested date. Nothing here performs
I/O except the seed loader at the bottom of the module.
"""

from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

logger = structlog.get_logger()

ONE_MILLION = Decimal("1000000")
COST_QUANTUM = Decimal("0.0000000001")


@dataclass(frozen=True)
class PriceRuleData:
    """A single effective-dated price rule."""

    model_prefix: str
    prompt_per_million: Decimal
    completion_per_million: Decimal
    effective_from: date
    cached_prompt_per_million: Optional[Decimal] = None


@dataclass(frozen=True)
class DefaultRate:
    """Fallback rate used when no rule covers a model on a date."""

    prompt_per_million: Decimal
    completion_per_million: Decimal
    cached_prompt_per_million: Optional[Decimal] = None


@dataclass(frozen=True)
class PriceQuote:
    """Rates that apply to one (model, date) lookup."""

    prompt_per_million: Decimal
    completion_per_million: Decimal
    cached_prompt_per_million: Optional[Decimal] = None
    model_prefix: Optional[str] = None
    effective_from: Optional[date] = None
    is_default: bool = False

    @classmethod
    def from_rule(cls, rule: PriceRuleData) -> "PriceQuote":
        return cls(
            prompt_per_million=rule.prompt_per_million,
            completion_per_million=rule.completion_per_million,
            cached_prompt_per_million=rule.cached_prompt_per_million,
            model_prefix=rule.model_prefix,
            effective_from=rule.effective_from,
        )

    @classmethod
    def from_default(cls, default: DefaultRate) -> "PriceQuote":
        return cls(
            prompt_per_million=default.prompt_per_million,
            completion_per_million=default.completion_per_million,
            cached_prompt_per_million=default.cached_prompt_per_million,
            is_default=True,
        )


def resolve_price(
    rules: Iterable[PriceRuleData],
    model: str,
    as_of: date,
    default: Optional[DefaultRate] = None,
) -> Optional[PriceQuote]:
    """
    Resolve the price for ``model`` on ``as_of``.

    Returns:
        The matching quote, a default quote when one is configured and no rule
        applies, or ``None`` when the price is unknown.
    """
    matching = [rule for rule in rules if model.startswith(rule.model_prefix)]
    if matching:
        longest = max(len(rule.model_prefix) for rule in matching)
        candidates = [
            rule
            for rule in matching
            if len(rule.model_prefix) == longest and rule.effective_from <= as_of
        ]
        if candidates:
            chosen = max(candidates, key=lambda rule: rule.effective_from)
            return PriceQuote.from_rule(chosen)

    if default is not None:
        return PriceQuote.from_default(default)
    return None


def calculate_cost(
    quote: PriceQuote,
    prompt_tokens: int,
    cached_prompt_tokens: int,
    completion_tokens: int,
) -> Decimal:
    """
    Calculate the USD cost of a token bundle under ``quote``.

    Cached prompt tokens fall back to the prompt rate when the quote has no
    dedicated cached rate.
    """
    cached_rate = quote.cached_prompt_per_million
    if cached_rate is None:
        cached_rate = quote.prompt_per_million

    prompt_cost = Decimal(prompt_tokens) * quote.prompt_per_million / ONE_MILLION
    cached_cost = Decimal(cached_prompt_tokens) * cached_rate / ONE_MILLION
    completion_cost = Decimal(completion_tokens) * quote.completion_per_million / ONE_MILLION

    return (prompt_cost + cached_cost + completion_cost).quantize(COST_QUANTUM)


class PriceTimeline:
    """
    Immutable snapshot of the price rules and the optional default rate.

    Rules are grouped per prefix so lookups only scan prefixes, not every rule.
    """

    def __init__(
        self,
        rules: Iterable[PriceRuleData] = (),
        default: Optional[DefaultRate] = None,
    ):
        self.rules: tuple[PriceRuleData, ...] = tuple(rules)
        self.default = default
        self._by_prefix: dict[str, list[PriceRuleData]] = defaultdict(list)
        for rule in self.rules:
            self._by_prefix[rule.model_prefix].append(rule)

    def __len__(self) -> int:
        return len(self.rules)

    def resolve(self, model: str, as_of: date) -> Optional[PriceQuote]:
        prefixes = [prefix for prefix in self._by_prefix if model.startswith(prefix)]
        if not prefixes:
            return resolve_price((), model, as_of, self.default)
        longest = max(prefixes, key=len)
        return resolve_price(self._by_prefix[longest], model, as_of, self.default)

    def cost_for(
        self,
        model: str,
        as_of: date,
        prompt_tokens: int,
        cached_prompt_tokens: int,
        completion_tokens: int,
    ) -> Optional[Decimal]:
        """Return the cost for a token bundle, or ``None`` when unpriced."""
        quote = self.resolve(model, as_of)
        if quote is None:
            return None
        return calculate_cost(quote, prompt_tokens, cached_prompt_tokens, completion_tokens)


# Seed configuration

_DEFAULT_SEED: dict[str, Any] = {
    "effective_from": "2025-01-01",
    "models": {
        "gpt-4.1": {"prompt_per_million": 2.0, "cached_prompt_per_million": 0.5, "completion_per_million": 8.0},
        "gpt-4.1-mini": {"prompt_per_million": 0.4, "cached_prompt_per_million": 0.1, "completion_per_million": 1.6},
        "gpt-4.1-nano": {"prompt_per_million": 0.1, "cached_prompt_per_million": 0.025, "completion_per_million": 0.4},
        "gpt-4o": {"prompt_per_million": 2.5, "cached_prompt_per_million": 1.25, "completion_per_million": 10.0},
        "gpt-4o-mini": {"prompt_per_million": 0.15, "cached_prompt_per_million": 0.075, "completion_per_million": 0.6},
        "o4-mini": {"prompt_per_million": 4.0, "cached_prompt_per_million": 1.0, "completion_per_million": 16.0},
        "gpt-5": {"prompt_per_million": 1.25, "cached_prompt_per_million": 0.125, "completion_per_million": 10.0},
    },
}


def _to_decimal(value: Any, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid rate for {field}: {value!r}") from e


def _rate(entry: Mapping[str, Any], name: str, required: bool = True) -> Optional[Decimal]:
    """Read a per-million rate, accepting the per-1k spelling as well."""
    if entry.get(f"{name}_per_million") is not None:
        return _to_decimal(entry[f"{name}_per_million"], f"{name}_per_million")
    if entry.get(f"{name}_per_1k") is not None:
        return _to_decimal(entry[f"{name}_per_1k"], f"{name}_per_1k") * Decimal("1000")
    if required:
        raise ValueError(f"Missing {name}_per_million")
    return None


def _parse_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def parse_seed(
    data: Mapping[str, Any],
    today: Optional[date] = None,
) -> tuple[list[PriceRuleData], Optional[DefaultRate]]:
    """Convert a parsed seed document into price rules and a default rate."""
    fallback_date = data.get("effective_from")
    fallback = _parse_date(fallback_date) if fallback_date else (today or date.today())

    rules = []
    for prefix, entry in (data.get("models") or {}).items():
        entries = entry if isinstance(entry, list) else [entry]
        for item in entries:
            rules.append(
                PriceRuleData(
                    model_prefix=str(prefix),
                    prompt_per_million=_rate(item, "prompt"),
                    completion_per_million=_rate(item, "completion"),
                    cached_prompt_per_million=_rate(item, "cached_prompt", required=False),
                    effective_from=(
                        _parse_date(item["effective_from"])
                        if item.get("effective_from")
                        else fallback
                    ),
                )
            )

    default = None
    default_entry = data.get("default")
    if default_entry:
        default = DefaultRate(
            prompt_per_million=_rate(default_entry, "prompt"),
            completion_per_million=_rate(default_entry, "completion"),
            cached_prompt_per_million=_rate(default_entry, "cached_prompt", required=False),
        )

    return rules, default


def load_seed_rules(
    config_path: Path,
    today: Optional[date] = None,
) -> tuple[list[PriceRuleData], Optional[DefaultRate]]:
    """Load seed pricing from YAML, falling back to built-in rules."""
    config_file = Path(config_path).expanduser()

    if not config_file.exists():
        logger.warning("Pricing config not found, using defaults", path=str(config_file))
        return parse_seed(_DEFAULT_SEED, today)

    with open(config_file) as f:
        data = yaml.safe_load(f) or {}
    rules, default = parse_seed(data, today)
    logger.info("Loaded pricing configuration", path=str(config_file), rules=len(rules))
    return rules, default
