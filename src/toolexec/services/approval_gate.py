"""Approval gate for artifacts that need a decision before running."""

import threading
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from ..models.security import (
    ApprovalRequest,
    ApprovalStatus,
    RiskAssessment,
    ValidationReport,
)

logger = structlog.get_logger()

Approver = Callable[[ApprovalRequest], Awaitable[bool]]


class ApprovalGate:
    """Tracks approval requests and resolves them through a policy or approver."""

    def __init__(self, approver: Approver | None = None, default_policy: str = "allow") -> None:
        """
        Initialize approval gate.

        Args:
            approver: Async callback deciding a request; True approves
            default_policy: "allow" or "deny", used when no approver is set
        """
        if default_policy not in ("allow", "deny"):
            raise ValueError(f"Unknown approval policy: {default_policy}")
        self._approver = approver
        self._default_policy = default_policy
        self._requests: dict[str, ApprovalRequest] = {}
        self._lock = threading.Lock()

    def set_approver(self, approver: Approver | None) -> None:
        self._approver = approver

    def request(
        self,
        digest: str,
        assessment: RiskAssessment,
        report: ValidationReport,
        execution_id: str | None = None,
    ) -> ApprovalRequest:
        """Record a new pending request."""
        request = ApprovalRequest(
            digest=digest,
            execution_id=execution_id,
            assessment=assessment,
            report=report,
        )
        with self._lock:
            self._requests[request.id] = request
        logger.info(
            "approval_requested",
            request_id=request.id,
            digest=digest[:12],
            level=assessment.level.value,
            issues=len(report.issues),
        )
        return request

    def _decide(
        self,
        request_id: str,
        status: ApprovalStatus,
        decided_by: str,
        reason: str | None,
    ) -> ApprovalRequest:
        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                raise KeyError(f"Unknown approval request: {request_id}")
            if current.status is not ApprovalStatus.PENDING:
                raise ValueError(f"Approval request {request_id} already {current.status.value}")
            decided = current.model_copy(
                update={
                    "status": status,
                    "decided_by": decided_by,
                    "decided_at": datetime.now(UTC),
                    "reason": reason,
                }
            )
            self._requests[request_id] = decided
        logger.info(
            "approval_decided",
            request_id=request_id,
            status=status.value,
            decided_by=decided_by,
        )
        return decided

    def approve(self, request_id: str, decided_by: str = "operator", reason: str | None = None) -> ApprovalRequest:
        return self._decide(request_id, ApprovalStatus.APPROVED, decided_by, reason)

    def reject(self, request_id: str, decided_by: str = "operator", reason: str | None = None) -> ApprovalRequest:
        return self._decide(request_id, ApprovalStatus.REJECTED, decided_by, reason)

    async def resolve(self, request: ApprovalRequest) -> ApprovalRequest:
        """
        Decide a pending request.

        The approver callback decides when configured; otherwise the default
        policy applies. An approver that raises rejects the request.

        Args:
            request: Pending request created by `request`

        Returns:
            The decided request
        """
        if self._approver is None:
            if self._default_policy == "allow":
                return self.approve(request.id, decided_by="policy", reason="default policy allow")
            return self.reject(request.id, decided_by="policy", reason="default policy deny")

        try:
            approved = await self._approver(request)
        except Exception as e:
            logger.error("approver_failed", request_id=request.id, error=str(e))
            return self.reject(request.id, decided_by="approver", reason=f"approver error: {e}")

        if approved:
            return self.approve(request.id, decided_by="approver")
        return self.reject(request.id, decided_by="approver", reason="rejected by approver")

    def get(self, request_id: str) -> ApprovalRequest | None:
        return self._requests.get(request_id)

    def pending(self) -> list[ApprovalRequest]:
        with self._lock:
            return [r for r in self._requests.values() if r.status is ApprovalStatus.PENDING]

    def cleanup(self, older_than: timedelta = timedelta(hours=24)) -> int:
        """Drop decided requests older than the given age."""
        cutoff = datetime.now(UTC) - older_than
        with self._lock:
            stale = [
                request_id
                for request_id, request in self._requests.items()
                if request.status is not ApprovalStatus.PENDING and request.requested_at < cutoff
            ]
            for request_id in stale:
                del self._requests[request_id]
        return len(stale)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            requests = list(self._requests.values())
        return {
            "total": len(requests),
            "pending": sum(1 for r in requests if r.status is ApprovalStatus.PENDING),
            "approved": sum(1 for r in requests if r.status is ApprovalStatus.APPROVED),
            "rejected": sum(1 for r in requests if r.status is ApprovalStatus.REJECTED),
        }

    @staticmethod
    def format_request(request: ApprovalRequest) -> str:
        """Render a request for a human reviewer."""
        lines = [
            f"Approval request {request.id}",
            f"  artifact: {request.digest[:16]}",
            f"  risk: {request.assessment.level.value} ({request.assessment.score:.1f})",
            f"  recommendation: {request.assessment.recommendation}",
            f"  status: {request.status.value}",
        ]
        if request.report.issues:
            lines.append("  findings:")
            for issue in request.report.issues:
                location = f"line {issue.line}" if issue.line else "unknown line"
                lines.append(f"    - [{issue.severity.value}] {issue.description} ({location})")
        return "\n".join(lines)
