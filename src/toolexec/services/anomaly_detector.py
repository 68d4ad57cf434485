"""Heuristic anomaly detection over execution metrics and the audit trail."""

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import structlog

from ..models.audit import Anomaly, AnomalyReport, AnomalyType, AuditEvent, AuditKind, AuditSeverity
from ..models.security import Severity

logger = structlog.get_logger()

MIN_BASELINE_SAMPLES = 10
SPIKE_FACTOR = 3.0
FAST_RUN_MS = 10.0
SLOW_RUN_MS = 60000.0
FAILURE_STREAK = 3
ERROR_BURST = 5

SEVERITY_ORDER = [
    AuditSeverity.INFO,
    AuditSeverity.WARNING,
    AuditSeverity.ERROR,
    AuditSeverity.CRITICAL,
]


@dataclass(frozen=True)
class ExecutionSample:
    """Observed facts about one finished execution."""

    wall_ms: float
    memory_bytes: int = 0
    success: bool = True
    executed: bool = True
    static_severity: Severity | None = None


def highest_severity(anomalies: Iterable[Anomaly]) -> AuditSeverity:
    level = AuditSeverity.INFO
    for anomaly in anomalies:
        if SEVERITY_ORDER.index(anomaly.severity) > SEVERITY_ORDER.index(level):
            level = anomaly.severity
    return level


class AnomalyDetector:
    """
    Compares each execution with a rolling baseline of successful runs.

    Only runs that actually executed in a sandbox feed timing checks and the
    baseline; cache hits and refusals are judged on the audit trail alone.
    """

    def __init__(self, baseline_size: int = 1000) -> None:
        self._baseline: deque[tuple[float, int]] = deque(maxlen=baseline_size)
        self._analyzed = 0
        self._detected = 0

    @property
    def baseline(self) -> list[tuple[float, int]]:
        return list(self._baseline)

    def analyze(self, sample: ExecutionSample, recent_events: Iterable[AuditEvent] = ()) -> AnomalyReport:
        """
        Check one execution for anomalies and update the baseline.

        Args:
            sample: Metrics of the execution
            recent_events: Recent audit events, oldest first

        Returns:
            Report of anomalies found
        """
        events = list(recent_events)
        anomalies: list[Anomaly] = []
        if sample.executed:
            anomalies.extend(self._resource_spikes(sample))
            anomalies.extend(self._unusual_timing(sample))
        anomalies.extend(self._suspicious_patterns(sample, events))
        anomalies.extend(self._repeated_failures(events))

        if sample.executed and sample.success:
            self._baseline.append((sample.wall_ms, sample.memory_bytes))

        self._analyzed += 1
        if anomalies:
            self._detected += 1
            logger.info("anomalies_detected", count=len(anomalies), types=[a.type.value for a in anomalies])

        return AnomalyReport(
            detected=bool(anomalies),
            anomalies=anomalies,
            level=highest_severity(anomalies),
        )

    def _resource_spikes(self, sample: ExecutionSample) -> list[Anomaly]:
        if len(self._baseline) < MIN_BASELINE_SAMPLES:
            return []

        avg_ms = sum(ms for ms, _ in self._baseline) / len(self._baseline)
        avg_memory = sum(mem for _, mem in self._baseline) / len(self._baseline)
        anomalies = []
        if avg_ms > 0 and sample.wall_ms > avg_ms * SPIKE_FACTOR:
            anomalies.append(
                Anomaly(
                    type=AnomalyType.RESOURCE_SPIKE,
                    severity=AuditSeverity.ERROR,
                    description=f"Execution time {sample.wall_ms:.0f}ms exceeds 3x the average {avg_ms:.0f}ms",
                    evidence={"wall_ms": sample.wall_ms, "average_ms": round(avg_ms, 3)},
                )
            )
        if avg_memory > 0 and sample.memory_bytes > avg_memory * SPIKE_FACTOR:
            anomalies.append(
                Anomaly(
                    type=AnomalyType.RESOURCE_SPIKE,
                    severity=AuditSeverity.ERROR,
                    description=(
                        f"Memory use {sample.memory_bytes} bytes exceeds 3x the average {avg_memory:.0f} bytes"
                    ),
                    evidence={"memory_bytes": sample.memory_bytes, "average_bytes": round(avg_memory)},
                )
            )
        return anomalies

    @staticmethod
    def _unusual_timing(sample: ExecutionSample) -> list[Anomaly]:
        if sample.wall_ms < FAST_RUN_MS:
            return [
                Anomaly(
                    type=AnomalyType.UNUSUAL_TIMING,
                    severity=AuditSeverity.INFO,
                    description=f"Suspiciously fast execution: {sample.wall_ms:.1f}ms",
                    evidence={"wall_ms": sample.wall_ms},
                )
            ]
        if sample.wall_ms > SLOW_RUN_MS:
            return [
                Anomaly(
                    type=AnomalyType.UNUSUAL_TIMING,
                    severity=AuditSeverity.ERROR,
                    description=f"Suspiciously slow execution: {sample.wall_ms:.0f}ms",
                    evidence={"wall_ms": sample.wall_ms},
                )
            ]
        return []

    @staticmethod
    def _suspicious_patterns(sample: ExecutionSample, events: list[AuditEvent]) -> list[Anomaly]:
        anomalies = []
        if sample.static_severity is Severity.CRITICAL:
            anomalies.append(
                Anomaly(
                    type=AnomalyType.SUSPICIOUS_PATTERN,
                    severity=AuditSeverity.CRITICAL,
                    description="Generated code contained a critical security issue",
                    evidence={"static_severity": sample.static_severity.value},
                )
            )
        errors = sum(1 for e in events if e.kind is AuditKind.ERROR)
        if errors > ERROR_BURST:
            anomalies.append(
                Anomaly(
                    type=AnomalyType.SUSPICIOUS_PATTERN,
                    severity=AuditSeverity.WARNING,
                    description=f"High error rate: {errors} recent errors",
                    evidence={"errors": errors},
                )
            )
        return anomalies

    @staticmethod
    def _repeated_failures(events: list[AuditEvent]) -> list[Anomaly]:
        streak = 0
        for event in reversed(events):
            if event.kind is not AuditKind.EXECUTION or "success" not in event.payload:
                continue
            if event.payload["success"]:
                break
            streak += 1

        if streak < FAILURE_STREAK:
            return []
        return [
            Anomaly(
                type=AnomalyType.REPEATED_FAILURE,
                severity=AuditSeverity.ERROR if streak > ERROR_BURST else AuditSeverity.WARNING,
                description=f"{streak} consecutive execution failures",
                evidence={"streak": streak},
            )
        ]

    def clear_baseline(self) -> None:
        self._baseline.clear()

    def get_stats(self) -> dict[str, Any]:
        size = len(self._baseline)
        return {
            "baseline_size": size,
            "baseline_capacity": self._baseline.maxlen,
            "average_wall_ms": round(sum(ms for ms, _ in self._baseline) / size, 3) if size else 0.0,
            "average_memory_bytes": round(sum(m for _, m in self._baseline) / size) if size else 0,
            "analyzed": self._analyzed,
            "detected": self._detected,
        }
