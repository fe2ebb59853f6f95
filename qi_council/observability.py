"""In-memory record of provider calls and deliberations, with windowed aggregates.

One recorder is built by the entry point and injected into every adapter.
History is a bounded ring buffer; the oldest entries drop off first.
"""

import logging
import math
import time
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY = 1000
DEFAULT_WINDOW_MS = 3_600_000


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass
class ProviderCallRecord:
    provider: str
    model: str
    endpoint: str = "chat"
    latency_ms: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    finish_reason: str = "unknown"
    success: bool = False
    error: str | None = None
    agent_id: str | None = None
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: _new_id("llm"))

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class AggregateMetrics:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    avg_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    calls_by_provider: dict[str, int] = field(default_factory=dict)
    calls_by_model: dict[str, int] = field(default_factory=dict)
    finish_reasons: dict[str, int] = field(default_factory=dict)
    error_types: dict[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        return self.successful_calls / self.total_calls if self.total_calls else 0.0


@dataclass
class DeliberationRecord:
    participating_agents: list[str]
    failed_agents: list[str]
    consensus_level: str
    final_verdict: str
    veto_triggered: bool = False
    total_latency_ms: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    heuristic_phases: list[str] = field(default_factory=list)
    status_votes: dict[str, list[str]] = field(default_factory=dict)  # verdict -> agent ids
    detected_concerns: list[str] = field(default_factory=list)
    pilot_id: str | None = None
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: _new_id("delib"))


@dataclass
class DeliberationMetrics:
    total_deliberations: int = 0
    avg_participants: float = 0.0
    avg_latency_ms: float = 0.0
    veto_rate: float = 0.0
    consensus_distribution: dict[str, int] = field(default_factory=dict)
    verdict_distribution: dict[str, int] = field(default_factory=dict)
    agent_participation: dict[str, int] = field(default_factory=dict)
    agent_failures: dict[str, int] = field(default_factory=dict)


def _as_number(value: object) -> float:
    """Coerce telemetry to a finite non-negative float; anything else is 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number) or number < 0:
        return 0.0
    return number


def _as_text(value: object, default: str) -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def _percentile(sorted_values: list[float], p: float) -> float:
    if not sorted_values:
        return 0.0
    index = min(int(len(sorted_values) * p), len(sorted_values) - 1)
    return sorted_values[index]


def error_type(error: str | None) -> str:
    """Classify an error message by the text before its first colon."""
    if not error:
        return "unknown"
    return error.split(":", 1)[0].strip() or "unknown"


class ObservabilityRecorder:
    """Bounded history of provider calls and deliberations. Never raises."""

    def __init__(self, max_history: int = DEFAULT_MAX_HISTORY) -> None:
        self.max_history = max_history
        self._calls: deque[ProviderCallRecord] = deque(maxlen=max_history)
        self._deliberations: deque[DeliberationRecord] = deque(maxlen=max_history)

    def __len__(self) -> int:
        return len(self._calls)

    def record(self, call: ProviderCallRecord) -> ProviderCallRecord:
        """Store one provider call. Malformed telemetry is coerced to zero/"unknown"."""
        error = getattr(call, "error", None)
        clean = ProviderCallRecord(
            provider=_as_text(getattr(call, "provider", None), "unknown"),
            model=_as_text(getattr(call, "model", None), "unknown"),
            endpoint=_as_text(getattr(call, "endpoint", None), "chat"),
            latency_ms=_as_number(getattr(call, "latency_ms", 0)),
            input_tokens=int(_as_number(getattr(call, "input_tokens", 0))),
            output_tokens=int(_as_number(getattr(call, "output_tokens", 0))),
            finish_reason=_as_text(getattr(call, "finish_reason", None), "unknown"),
            success=bool(getattr(call, "success", False)),
            error=str(error) if error is not None else None,
            agent_id=getattr(call, "agent_id", None),
            timestamp=_as_number(getattr(call, "timestamp", 0)) or time.time(),
            id=_as_text(getattr(call, "id", None), _new_id("llm")),
        )
        self._calls.append(clean)

        if clean.success:
            logger.info(
                "%s/%s | %.0fms | %d tokens | %s",
                clean.provider, clean.model, clean.latency_ms, clean.total_tokens, clean.finish_reason,
            )
        else:
            logger.warning(
                "%s/%s | %.0fms | failed: %s",
                clean.provider, clean.model, clean.latency_ms, clean.error,
            )
        return clean

    def recent(self, limit: int = 50) -> list[ProviderCallRecord]:
        """Most recent calls, newest last."""
        if limit <= 0:
            return []
        return list(self._calls)[-limit:]

    def metrics(self, window_ms: float = DEFAULT_WINDOW_MS) -> AggregateMetrics:
        cutoff = time.time() - window_ms / 1000
        calls = [c for c in self._calls if c.timestamp > cutoff]
        if not calls:
            return AggregateMetrics()

        latencies = sorted(c.latency_ms for c in calls)
        successful = sum(1 for c in calls if c.success)
        return AggregateMetrics(
            total_calls=len(calls),
            successful_calls=successful,
            failed_calls=len(calls) - successful,
            avg_latency_ms=sum(latencies) / len(latencies),
            p95_latency_ms=_percentile(latencies, 0.95),
            p99_latency_ms=_percentile(latencies, 0.99),
            total_input_tokens=sum(c.input_tokens for c in calls),
            total_output_tokens=sum(c.output_tokens for c in calls),
            calls_by_provider=dict(Counter(c.provider for c in calls)),
            calls_by_model=dict(Counter(c.model for c in calls)),
            finish_reasons=dict(Counter(c.finish_reason for c in calls)),
            error_types=dict(Counter(error_type(c.error) for c in calls if not c.success)),
        )

    def record_deliberation(self, record: DeliberationRecord) -> DeliberationRecord:
        self._deliberations.append(record)
        logger.info(
            "Deliberation %s | %d agents | %s | %s%s",
            record.id,
            len(record.participating_agents),
            record.consensus_level,
            record.final_verdict,
            " | VETO" if record.veto_triggered else "",
        )
        return record

    def recent_deliberations(self, limit: int = 20) -> list[DeliberationRecord]:
        if limit <= 0:
            return []
        return list(self._deliberations)[-limit:]

    def deliberation_metrics(self, window_ms: float = DEFAULT_WINDOW_MS) -> DeliberationMetrics:
        cutoff = time.time() - window_ms / 1000
        records = [d for d in self._deliberations if d.timestamp > cutoff]
        if not records:
            return DeliberationMetrics()

        participation: Counter[str] = Counter()
        failures: Counter[str] = Counter()
        for record in records:
            participation.update(record.participating_agents)
            failures.update(record.failed_agents)

        return DeliberationMetrics(
            total_deliberations=len(records),
            avg_participants=sum(len(d.participating_agents) for d in records) / len(records),
            avg_latency_ms=sum(d.total_latency_ms for d in records) / len(records),
            veto_rate=sum(1 for d in records if d.veto_triggered) / len(records),
            consensus_distribution=dict(Counter(d.consensus_level for d in records)),
            verdict_distribution=dict(Counter(d.final_verdict for d in records)),
            agent_participation=dict(participation),
            agent_failures=dict(failures),
        )

    def clear(self) -> None:
        self._calls.clear()
        self._deliberations.clear()
