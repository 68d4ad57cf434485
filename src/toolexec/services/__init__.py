"""Engine services layer."""

from .anomaly_detector import AnomalyDetector, ExecutionSample
from .approval_gate import ApprovalGate
from .audit_logger import AuditLogger
from .cache_manager import CacheManager
from .cleanup_manager import CleanupManager
from .code_synthesizer import CodeSynthesizer
from .code_validator import CodeValidator
from .compliance import ComplianceReporter
from .discovery import DiscoveryIndex
from .embedding_service import HashingEmbedder, SentenceTransformerEmbedder, create_embedder
from .pii_tokenizer import PIITokenizer
from .risk_assessor import RiskAssessor
from .tool_registry import ToolRegistry
from .workspace_manager import WorkspaceManager

__all__ = [
    "ToolRegistry",
    "DiscoveryIndex",
    "HashingEmbedder",
    "SentenceTransformerEmbedder",
    "create_embedder",
    "CodeSynthesizer",
    "CodeValidator",
    "RiskAssessor",
    "ApprovalGate",
    "PIITokenizer",
    "CacheManager",
    "WorkspaceManager",
    "CleanupManager",
    "AuditLogger",
    "AnomalyDetector",
    "ExecutionSample",
    "ComplianceReporter",
]
