"""Risk assessment combining static findings with artifact characteristics."""

import re

import structlog

from ..models.artifact import CodeArtifact
from ..models.security import (
    IssueKind,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    ValidationReport,
)

logger = structlog.get_logger()

FACTOR_WEIGHTS = {
    "static_validation": 0.45,
    "system_access": 0.2,
    "side_effects": 0.15,
    "complexity": 0.1,
    "dependencies": 0.1,
}

SIDE_EFFECT_SCORES = {
    "process": 60.0,
    "filesystem": 40.0,
    "network": 40.0,
    "state": 20.0,
}

_BRANCH = re.compile(r"\b(?:if|elif|else|for|while|case|catch|except|switch)\b|&&|\|\||\?\?")

_LEVEL_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


def level_for_score(score: float) -> RiskLevel:
    """Map a 0-100 score onto a risk level."""
    if score >= 80:
        return RiskLevel.CRITICAL
    if score >= 60:
        return RiskLevel.HIGH
    if score >= 40:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _at_least(level: RiskLevel, floor: RiskLevel) -> RiskLevel:
    return max(level, floor, key=_LEVEL_ORDER.index)


class RiskAssessor:
    """Scores an artifact and its validation report."""

    def assess(self, artifact: CodeArtifact, report: ValidationReport) -> RiskAssessment:
        """
        Assess an artifact.

        Args:
            artifact: Synthesized program
            report: Static validation report for the same artifact

        Returns:
            Weighted assessment; approval-required reports are at least high,
            refused reports are critical
        """
        factors = [
            RiskFactor(
                name="static_validation",
                score=float(report.risk_score),
                weight=FACTOR_WEIGHTS["static_validation"],
                description=f"{len(report.issues)} static finding(s)",
            ),
            self._system_access(report),
            self._side_effects(artifact),
            self._complexity(artifact),
            self._dependencies(artifact),
        ]
        score = round(min(100.0, sum(f.score * f.weight for f in factors)), 2)
        level = level_for_score(score)
        if report.requires_approval:
            level = _at_least(level, RiskLevel.HIGH)
        if report.refused:
            level = RiskLevel.CRITICAL

        assessment = RiskAssessment(
            level=level,
            score=score,
            factors=factors,
            requires_approval=report.requires_approval,
            recommendation=self._recommendation(level, report),
        )
        logger.debug(
            "risk_assessed",
            digest=artifact.digest[:12],
            level=level.value,
            score=score,
        )
        return assessment

    @staticmethod
    def _system_access(report: ValidationReport) -> RiskFactor:
        kinds = {issue.kind for issue in report.issues}
        score = 0.0
        if IssueKind.PROCESS_SPAWN in kinds or IssueKind.OBJECT_GRAPH_MUTATION in kinds:
            score = 100.0
        elif IssueKind.ENVIRONMENT_ACCESS in kinds or IssueKind.DYNAMIC_IMPORT in kinds:
            score = 50.0
        return RiskFactor(
            name="system_access",
            score=score,
            weight=FACTOR_WEIGHTS["system_access"],
            description="process, interpreter or environment access",
        )

    @staticmethod
    def _side_effects(artifact: CodeArtifact) -> RiskFactor:
        score = sum(SIDE_EFFECT_SCORES.get(effect, 20.0) for effect in artifact.side_effects)
        return RiskFactor(
            name="side_effects",
            score=min(100.0, score),
            weight=FACTOR_WEIGHTS["side_effects"],
            description=", ".join(sorted(artifact.side_effects)) or "none declared",
        )

    @staticmethod
    def _complexity(artifact: CodeArtifact) -> RiskFactor:
        lines = [line for line in artifact.source.splitlines() if line.strip()]
        branches = len(_BRANCH.findall(artifact.source))
        score = min(100.0, len(lines) / 10 + branches * 2)
        return RiskFactor(
            name="complexity",
            score=score,
            weight=FACTOR_WEIGHTS["complexity"],
            description=f"{len(lines)} lines, {branches} branches",
        )

    @staticmethod
    def _dependencies(artifact: CodeArtifact) -> RiskFactor:
        count = len(artifact.dependencies)
        score = 0.0 if count == 0 else 20.0 if count <= 2 else 40.0 if count <= 5 else 60.0
        return RiskFactor(
            name="dependencies",
            score=score,
            weight=FACTOR_WEIGHTS["dependencies"],
            description=f"{count} external dependencies",
        )

    @staticmethod
    def _recommendation(level: RiskLevel, report: ValidationReport) -> str:
        if report.refused:
            return "Refuse execution: forbidden constructs exceed the refusal threshold"
        if level is RiskLevel.CRITICAL:
            return "Run only after approval, in the container tier"
        if level is RiskLevel.HIGH:
            return "Run in the container tier"
        if level is RiskLevel.MEDIUM:
            return "Run in the restricted interpreter tier"
        return "Run in the process tier"
