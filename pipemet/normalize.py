"""Normalization boundary between producer JSON and ``PipelineEvent``.

Producers send latency fields as bare numbers, numeric strings or strings
with an ``ms`` suffix, and mark skipped stages with ``"none"``/``"None"``, a
string zero, or by omitting the field. Keys arrive in camelCase, snake_case
or all lowercase, and the pipeline backend nests latencies under a ``latency``
mapping keyed by stage name. Everything is folded into one strict shape here.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import structlog

from .errors import ValidationError
from .models import LATENCY_STAGES, USAGE_DIMENSIONS, PipelineEvent

logger = structlog.get_logger(__name__)

_SKIP_SENTINELS = {"", "none", "null", "n/a", "na", "-"}
_MS_SUFFIX = re.compile(r"^\s*(-?[0-9]*\.?[0-9]+(?:[eE][-+]?[0-9]+)?)\s*(?:ms)?\s*$", re.IGNORECASE)

_IDENTITY_ALIASES = {
    "request_id": ("requestid", "id"),
    "customer_name": ("customername", "customer"),
    "customer_app": ("customerapp", "customerappname", "app"),
    "timestamp": ("timestamp", "ts", "createdat"),
}

_LATENCY_ALIASES = {
    "lang_detection": (
        "langdetectionlatencyms",
        "langdetectionlatency",
        "languagedetectionlatencyms",
        "languagedetectionlatency",
    ),
    "nmt": ("nmtlatencyms", "nmtlatency"),
    "llm": ("llmlatencyms", "llmlatency"),
    "back_nmt": ("backnmtlatencyms", "backnmtlatency"),
    "tts": ("ttslatencyms", "ttslatency"),
    "overall": (
        "overalllatencyms",
        "overalllatency",
        "overallpipelinelatency",
        "overallpipelinelatencyms",
        "pipelinelatency",
    ),
}

# Keys of the backend's nested ``latency``/``usage`` mappings.
_NESTED_STAGE_ALIASES = {
    "lang_detection": ("langdetection", "languagedetection"),
    "nmt": ("nmt",),
    "llm": ("llm",),
    "back_nmt": ("backnmt",),
    "tts": ("tts",),
    "overall": ("overall", "pipelinetotal", "total", "overallpipeline"),
}

_USAGE_ALIASES = {
    "nmt": ("nmtusage",),
    "llm": ("llmusage",),
    "back_nmt": ("backnmtusage",),
    "tts": ("ttsusage",),
}


def _fold(key: str) -> str:
    return key.replace("_", "").replace("-", "").lower()


class _Garbage:
    """Marker for a present numeric field that could not be parsed."""

    def __init__(self, value: Any):
        self.value = value


def normalize_event(payload: Mapping[str, Any]) -> PipelineEvent:
    """Convert an accepted wire payload into a ``PipelineEvent``.

    Raises:
        ValidationError: identity fields missing, timestamp unparseable,
            or a negative latency/usage value.
    """
    if isinstance(payload, PipelineEvent):
        return payload
    if not isinstance(payload, Mapping):
        raise ValidationError("event payload must be a JSON object")

    folded = {_fold(str(key)): value for key, value in payload.items()}
    nested_latency = _folded_mapping(folded.get("latency"))
    nested_usage = _folded_mapping(folded.get("usage"))

    identity = {field: _first_present(folded, aliases) for field, aliases in _IDENTITY_ALIASES.items()}
    missing = [field for field, value in identity.items() if value is None or value == ""]
    if missing:
        raise ValidationError(
            f"missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )

    raw: Dict[str, Any] = {}
    values: Dict[str, Any] = {}

    for stage in LATENCY_STAGES:
        value = _first_present(folded, _LATENCY_ALIASES[stage])
        if value is None:
            value = _first_present(nested_latency, _NESTED_STAGE_ALIASES[stage])
        parsed = parse_latency(value, field=f"{stage}_latency_ms")
        if isinstance(parsed, _Garbage):
            raw[f"{stage}_latency_ms"] = parsed.value
            parsed = None
        values[f"{stage}_latency_ms"] = parsed

    for dimension in USAGE_DIMENSIONS:
        value = _first_present(folded, _USAGE_ALIASES[dimension])
        if value is None:
            value = _first_present(nested_usage, _NESTED_STAGE_ALIASES[dimension])
        parsed = parse_usage(value, field=f"{dimension}_usage")
        if isinstance(parsed, _Garbage):
            raw[f"{dimension}_usage"] = parsed.value
            parsed = None
        values[f"{dimension}_usage"] = parsed

    event = PipelineEvent(
        request_id=str(identity["request_id"]),
        customer_name=str(identity["customer_name"]),
        customer_app=str(identity["customer_app"]),
        timestamp=parse_timestamp(identity["timestamp"]),
        raw=raw,
        **values,
    )
    check_overall_latency(event)
    return event


def parse_latency(value: Any, field: str = "latency"):
    """Return milliseconds as float, None for skipped stages, or a garbage marker.

    An explicit numeric ``0`` is a measured sample. Absence, the string
    sentinels and a string zero (``"0"``, ``"0ms"``) mean the stage was skipped.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return _Garbage(value)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if text.lower() in _SKIP_SENTINELS:
            return None
        match = _MS_SUFFIX.match(text)
        if not match:
            return _Garbage(value)
        number = float(match.group(1))
        if number == 0:
            return None
    else:
        return _Garbage(value)

    if math.isnan(number) or math.isinf(number):
        return _Garbage(value)
    if number < 0:
        raise ValidationError(
            f"{field} must be non-negative",
            details={"field": field, "value": value},
        )
    return number


def parse_usage(value: Any, field: str = "usage"):
    """Return a non-negative integer count, None when absent, or a garbage marker.

    As with latencies, a string zero means the stage did not run.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return _Garbage(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lower() in _SKIP_SENTINELS:
            return None
        try:
            value = float(text)
        except ValueError:
            return _Garbage(value)
        if value == 0:
            return None
    if not isinstance(value, (int, float)):
        return _Garbage(value)
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value) or not value.is_integer()):
        return _Garbage(value)
    if value < 0:
        raise ValidationError(
            f"{field} must be non-negative",
            details={"field": field, "value": value},
        )
    return int(value)


def parse_timestamp(value: Any) -> datetime:
    """Parse ISO-8601 strings, epoch seconds or datetimes into aware UTC datetimes."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(
                f"unparseable timestamp: {value!r}",
                details={"field": "timestamp", "value": value},
            ) from exc
    else:
        raise ValidationError(
            f"unsupported timestamp type: {type(value).__name__}",
            details={"field": "timestamp"},
        )

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def check_overall_latency(event: PipelineEvent) -> bool:
    """Log a data-quality warning when overall latency is below a stage latency."""
    if event.overall_latency_ms is None:
        return True
    stage_latencies = [
        event.latency(stage)
        for stage in LATENCY_STAGES
        if stage != "overall" and event.latency(stage) is not None
    ]
    if stage_latencies and event.overall_latency_ms < max(stage_latencies):
        logger.warning(
            "pipeline_event.overall_latency_below_stage",
            request_id=event.request_id,
            customer_name=event.customer_name,
            customer_app=event.customer_app,
            overall_latency_ms=event.overall_latency_ms,
            max_stage_latency_ms=max(stage_latencies),
        )
        return False
    return True


def event_to_dict(event: PipelineEvent) -> Dict[str, Any]:
    """Serialize an event into the camelCase shape served to dashboards."""
    return {
        "requestId": event.request_id,
        "customerName": event.customer_name,
        "customerApp": event.customer_app,
        "timestamp": event.timestamp.isoformat(),
        "langDetectionLatencyMs": event.lang_detection_latency_ms,
        "nmtLatencyMs": event.nmt_latency_ms,
        "llmLatencyMs": event.llm_latency_ms,
        "backNmtLatencyMs": event.back_nmt_latency_ms,
        "ttsLatencyMs": event.tts_latency_ms,
        "overallLatencyMs": event.overall_latency_ms,
        "nmtUsage": event.nmt_usage,
        "llmUsage": event.llm_usage,
        "backNmtUsage": event.back_nmt_usage,
        "ttsUsage": event.tts_usage,
        "offset": event.offset,
    }


def _first_present(folded: Mapping[str, Any], aliases) -> Optional[Any]:
    for alias in aliases:
        if alias in folded and folded[alias] is not None:
            return folded[alias]
    return None


def _folded_mapping(value: Any) -> Dict[str, Any]:
    if not isinstance(value, Mapping):
        return {}
    return {_fold(str(key)): item for key, item in value.items()}
