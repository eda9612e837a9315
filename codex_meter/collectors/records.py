"""
Record Parsing
==============
Turns structured log lines and API payloads into usage counts.

Two record shapes are understood:

* Codex session rollouts, where ``turn_context`` records name the model and
  ``event_msg``/``token_count`` records carry *cumulative* session totals.
  Each new total is converted into a per-turn delta against the last
  committed totals, so the parse state travels with the tailer cursor.
* API-shaped records that carry a ``usage`` object directly, either as
  ``{"timestamp", "model", "usage"}`` or as a ``response.completed`` event.

Prompt tokens are always reported net of cached prompt tokens so the two can
be billed at different rates without double counting.
"""

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from codex_meter.schemas.usage import MAX_SESSION_ID_LENGTH, MAX_TOKEN_COUNT


class MalformedRecordError(ValueError):
    """A line that is not a decodable record."""


@dataclass(frozen=True)
class UsageCounts:
    """Token counts extracted from a ``usage`` object."""

    prompt_tokens: int
    cached_prompt_tokens: int
    completion_tokens: int
    reasoning_tokens: int = 0
    model: Optional[str] = None


@dataclass(frozen=True)
class ParsedUsage:
    """A usage-bearing record, ready to become a UsageEvent."""

    timestamp: datetime
    model: str
    prompt_tokens: int
    cached_prompt_tokens: int
    completion_tokens: int
    reasoning_tokens: int = 0
    session_id: Optional[str] = None


@dataclass
class TokenTotals:
    """Cumulative session totals as reported by ``token_count`` records."""

    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0
    reasoning_output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_mapping(cls, value: Any) -> Optional["TokenTotals"]:
        if not isinstance(value, Mapping):
            return None
        _reject_oversized(value)
        required = ("input_tokens", "output_tokens", "total_tokens")
        if any(not _is_count(value.get(key)) for key in required):
            return None
        return cls(
            input_tokens=value["input_tokens"],
            cached_input_tokens=_count(value.get("cached_input_tokens")),
            output_tokens=value["output_tokens"],
            reasoning_output_tokens=_count(value.get("reasoning_output_tokens")),
            total_tokens=value["total_tokens"],
        )

    def any_decreased(self, previous: "TokenTotals") -> bool:
        return any(
            getattr(self, name) < getattr(previous, name)
            for name in self.__dataclass_fields__
        )

    def minus(self, previous: "TokenTotals") -> "TokenTotals":
        return TokenTotals(
            **{
                name: max(getattr(self, name) - getattr(previous, name), 0)
                for name in self.__dataclass_fields__
            }
        )

    def is_zero(self) -> bool:
        return not any(getattr(self, name) for name in self.__dataclass_fields__)


@dataclass
class ParseState:
    """Per-file state needed to interpret cumulative records."""

    model: Optional[str] = None
    session_id: Optional[str] = None
    last_seen: TokenTotals = field(default_factory=TokenTotals)
    last_committed: TokenTotals = field(default_factory=TokenTotals)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ParseState":
        if not data:
            return cls()
        return cls(
            model=data.get("model"),
            session_id=data.get("session_id"),
            last_seen=TokenTotals(**(data.get("last_seen") or {})),
            last_committed=TokenTotals(**(data.get("last_committed") or {})),
        )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_count(value: Any) -> bool:
    return _is_int(value) and 0 <= value <= MAX_TOKEN_COUNT


def _reject_oversized(usage: Mapping[str, Any]) -> None:
    """Raise for any count, including nested detail counts, too large to store."""
    for key, value in usage.items():
        if isinstance(value, Mapping):
            _reject_oversized(value)
        elif _is_int(value) and value > MAX_TOKEN_COUNT:
            raise MalformedRecordError(f"Token count out of range: {key}")


def _count(value: Any) -> int:
    return value if _is_count(value) else 0


def _first_count(usage: Mapping[str, Any], keys: tuple[str, ...]) -> int:
    for key in keys:
        if _is_count(usage.get(key)):
            return usage[key]
    return 0


def _cached_tokens(usage: Mapping[str, Any]) -> int:
    for key in ("prompt_tokens_details", "input_tokens_details"):
        details = usage.get(key)
        if isinstance(details, Mapping) and _is_count(details.get("cached_tokens")):
            return details["cached_tokens"]
    return 0


def _reasoning_tokens(usage: Mapping[str, Any]) -> int:
    for key in ("completion_tokens_details", "output_tokens_details"):
        details = usage.get(key)
        if isinstance(details, Mapping) and _is_count(details.get("reasoning_tokens")):
            return details["reasoning_tokens"]
    return 0


def usage_from_payload(value: Any) -> Optional[UsageCounts]:
    """
    Extract token counts from an object holding a ``usage`` field.

    Accepts both the chat-completions spelling (``prompt_tokens``,
    ``completion_tokens``) and the responses spelling (``input_tokens``,
    ``output_tokens``). Cached tokens are clamped to the prompt total.

    Returns:
        Counts with ``prompt_tokens`` net of cached tokens, or ``None`` when
        there is no usage object

    Raises:
        MalformedRecordError: If a count is too large to store
    """
    if not isinstance(value, Mapping):
        return None
    usage = value.get("usage")
    if not isinstance(usage, Mapping):
        return None
    _reject_oversized(usage)

    prompt_total = _first_count(usage, ("prompt_tokens", "input_tokens"))
    cached = min(_cached_tokens(usage), prompt_total)
    completion = _first_count(usage, ("completion_tokens", "output_tokens"))
    model = value.get("model")

    return UsageCounts(
        prompt_tokens=prompt_total - cached,
        cached_prompt_tokens=cached,
        completion_tokens=completion,
        reasoning_tokens=min(_reasoning_tokens(usage), completion),
        model=model if isinstance(model, str) and model else None,
    )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 string or epoch seconds into an aware UTC datetime."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, ValueError, OSError):
            # Out of range for the platform, NaN or infinite.
            return None
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        except (OverflowError, ValueError):
            return None
    return None


def parse_record(line: str | bytes, state: ParseState) -> Optional[ParsedUsage]:
    """
    Parse one log line.

    Args:
        line: A complete line, without its newline
        state: Per-file parse state, updated in place

    Returns:
        The usage carried by the line, or ``None`` for records that carry no
        new usage

    Raises:
        MalformedRecordError: If the line is not a JSON object
    """
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedRecordError(f"Invalid UTF-8: {e}") from e

    if not line.strip():
        return None

    try:
        record = json.loads(line)
    except json.JSONDecodeError as e:
        raise MalformedRecordError(f"Invalid JSON: {e.msg}") from e
    if not isinstance(record, dict):
        raise MalformedRecordError("Record is not a JSON object")

    kind = record.get("type")
    payload = record.get("payload")

    if kind == "session_meta" and isinstance(payload, dict):
        if isinstance(payload.get("id"), str) and payload["id"]:
            state.session_id = payload["id"][:MAX_SESSION_ID_LENGTH]
        return None

    if kind == "turn_context" and isinstance(payload, dict):
        if isinstance(payload.get("model"), str) and payload["model"]:
            state.model = payload["model"]
        return None

    if kind == "event_msg" and isinstance(payload, dict):
        if payload.get("type") == "token_count":
            return _token_count(record, payload, state)
        return None

    if kind == "response.completed" and isinstance(record.get("response"), dict):
        return _api_record(record, record["response"])

    if "usage" in record:
        return _api_record(record, record)

    return None


def _token_count(
    record: Mapping[str, Any],
    payload: Mapping[str, Any],
    state: ParseState,
) -> Optional[ParsedUsage]:
    info = payload.get("info")
    if not isinstance(info, Mapping):
        return None
    totals = TokenTotals.from_mapping(info.get("total_token_usage"))
    if totals is None:
        return None

    # Counters went backwards: a new session context, start over from here.
    if totals.any_decreased(state.last_seen):
        state.last_seen = totals
        state.last_committed = totals
        return None

    if totals == state.last_seen:
        return None
    state.last_seen = totals

    if state.model is None:
        return None
    timestamp = parse_timestamp(record.get("timestamp"))
    if timestamp is None:
        return None

    delta = totals.minus(state.last_committed)
    if delta.is_zero():
        return None
    state.last_committed = totals

    cached = min(delta.cached_input_tokens, delta.input_tokens)
    return ParsedUsage(
        timestamp=timestamp,
        model=state.model,
        prompt_tokens=delta.input_tokens - cached,
        cached_prompt_tokens=cached,
        completion_tokens=delta.output_tokens,
        reasoning_tokens=min(delta.reasoning_output_tokens, delta.output_tokens),
        session_id=state.session_id,
    )


def _api_record(record: Mapping[str, Any], source: Mapping[str, Any]) -> Optional[ParsedUsage]:
    counts = usage_from_payload(source)
    if counts is None:
        raise MalformedRecordError("Record has a usage field that is not an object")

    model = counts.model or record.get("model")
    if not isinstance(model, str) or not model:
        raise MalformedRecordError("Usage record without a model")

    timestamp = parse_timestamp(record.get("timestamp")) or parse_timestamp(source.get("created_at"))
    if timestamp is None:
        raise MalformedRecordError("Usage record without a valid timestamp")

    session_id = record.get("session_id")
    if not isinstance(session_id, str) or not session_id:
        session_id = None
    return ParsedUsage(
        timestamp=timestamp,
        model=model,
        prompt_tokens=counts.prompt_tokens,
        cached_prompt_tokens=counts.cached_prompt_tokens,
        completion_tokens=counts.completion_tokens,
        reasoning_tokens=counts.reasoning_tokens,
        session_id=session_id[:MAX_SESSION_ID_LENGTH] if session_id else None,
    )
