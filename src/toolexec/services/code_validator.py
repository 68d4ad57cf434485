"""Static validation of synthesized artifacts against forbidden-construct catalogs."""

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path

import structlog

from ..models.artifact import CodeArtifact, Dialect
from ..models.security import IssueKind, SecurityIssue, Severity, ValidationReport

logger = structlog.get_logger()

DEFAULT_APPROVAL_THRESHOLD = 50
DEFAULT_REFUSAL_THRESHOLD = 100

_URL = re.compile(r"""\b(?:https?|wss?|ftp)://([^/\\\s"'`:?#]+)""", re.IGNORECASE)


@dataclass(frozen=True)
class ForbiddenPattern:
    """Catalog entry matched against artifact source."""

    kind: IssueKind
    regex: re.Pattern[str]
    severity: Severity
    description: str
    suggestion: str = ""


def _p(kind: IssueKind, pattern: str, severity: Severity, description: str, suggestion: str = "") -> ForbiddenPattern:
    return ForbiddenPattern(kind, re.compile(pattern), severity, description, suggestion)


K = IssueKind
S = Severity

PYTHON_PATTERNS: list[ForbiddenPattern] = [
    _p(K.DYNAMIC_EVALUATION, r"\beval\s*\(", S.CRITICAL, "eval() executes arbitrary code", "Parse data with json instead"),
    _p(K.DYNAMIC_EVALUATION, r"\bexec\s*\(", S.CRITICAL, "exec() executes arbitrary code"),
    _p(K.DYNAMIC_EVALUATION, r"\bcompile\s*\(", S.CRITICAL, "compile() builds code objects at runtime"),
    _p(K.DYNAMIC_IMPORT, r"__import__\s*\(", S.CRITICAL, "__import__() loads modules dynamically", "Use a static import"),
    _p(K.DYNAMIC_IMPORT, r"\bimportlib\b", S.HIGH, "importlib loads modules dynamically", "Use a static import"),
    _p(K.PROCESS_SPAWN, r"\bsubprocess\b", S.CRITICAL, "subprocess spawns external programs"),
    _p(K.PROCESS_SPAWN, r"\bos\.(?:system|popen|spawn\w*|exec\w*|fork\w*|kill\w*)\b", S.CRITICAL, "os process control"),
    _p(K.PROCESS_SPAWN, r"\b(?:pty|multiprocessing)\b", S.HIGH, "process creation module"),
    _p(K.FILESYSTEM_MUTATION, r"\bshutil\.(?:rmtree|move|copy\w*|chown)\b", S.HIGH, "shutil file mutation"),
    _p(K.FILESYSTEM_MUTATION, r"\bos\.(?:remove|unlink|rmdir|removedirs|rename|renames|replace|chmod|chown|truncate)\b", S.HIGH, "os file mutation"),
    _p(K.FILESYSTEM_MUTATION, r"""\bopen\s*\(\s*[rbf]*['"](?:/|~|\.\.)[^'"]*['"]\s*,\s*[rbf]*['"][wax+]""", S.HIGH, "Write to a path outside the workspace", "Write relative to the working directory"),
    _p(K.FILESYSTEM_MUTATION, r"\.(?:write_text|write_bytes|unlink|rmdir|chmod)\s*\(", S.MEDIUM, "pathlib file mutation"),
    _p(K.NETWORK_EGRESS, r"\bsocket\b", S.HIGH, "Raw socket access"),
    _p(K.NETWORK_EGRESS, r"\b(?:urllib\.request|http\.client|ftplib|smtplib|telnetlib)\b", S.MEDIUM, "Standard library network client"),
    _p(K.NETWORK_EGRESS, r"\b(?:requests|httpx|aiohttp)\.\w+\s*\(", S.MEDIUM, "HTTP client call"),
    _p(K.OBJECT_GRAPH_MUTATION, r"__(?:subclasses|globals|builtins|code|closure|mro|bases)__", S.CRITICAL, "Interpreter internals access"),
    _p(K.OBJECT_GRAPH_MUTATION, r"\bctypes\b", S.CRITICAL, "Native memory access through ctypes"),
    _p(K.OBJECT_GRAPH_MUTATION, r"\b(?:setattr|delattr)\s*\(", S.HIGH, "Dynamic attribute mutation"),
    _p(K.OBJECT_GRAPH_MUTATION, r"""\bgetattr\s*\([^)]*['"]__""", S.HIGH, "Dunder attribute lookup"),
    _p(K.OBJECT_GRAPH_MUTATION, r"\b(?:globals|vars|locals)\s*\(\s*\)", S.MEDIUM, "Namespace introspection"),
    _p(K.ENVIRONMENT_ACCESS, r"\bos\.(?:environ|getenv|putenv)\b", S.MEDIUM, "Environment variable access"),
    _p(K.UNBOUNDED_LOOP, r"\bwhile\s+(?:True|1)\s*:", S.MEDIUM, "Loop without a visible bound", "Add an explicit iteration limit"),
    _p(K.UNSAFE_DESERIALIZATION, r"\b(?:pickle|marshal|shelve|dill)\.loads?\b", S.HIGH, "Unsafe deserialization"),
]

TYPESCRIPT_PATTERNS: list[ForbiddenPattern] = [
    _p(K.DYNAMIC_EVALUATION, r"\beval\s*\(", S.CRITICAL, "eval() executes arbitrary code", "Parse data with JSON.parse instead"),
    _p(K.DYNAMIC_EVALUATION, r"\b(?:new\s+)?Function\s*\(", S.CRITICAL, "Function constructor builds code at runtime"),
    _p(K.DYNAMIC_EVALUATION, r"\bvm\.(?:run\w*|compile\w*|Script)\b|node:vm", S.CRITICAL, "vm module executes code"),
    _p(K.DYNAMIC_EVALUATION, r"""\bset(?:Timeout|Interval)\s*\(\s*['"`]""", S.HIGH, "Timer with string code"),
    _p(K.DYNAMIC_IMPORT, r"\brequire\s*\(", S.MEDIUM, "CommonJS require", "Use a static import"),
    _p(K.DYNAMIC_IMPORT, r"\bimport\s*\(", S.MEDIUM, "Dynamic import()", "Use a static import"),
    _p(K.PROCESS_SPAWN, r"\bchild_process\b", S.CRITICAL, "child_process spawns external programs"),
    _p(K.PROCESS_SPAWN, r"\b(?:execSync|execFileSync|spawnSync|execFile|spawn|fork)\s*\(", S.CRITICAL, "Process creation call"),
    _p(K.PROCESS_SPAWN, r"\bprocess\.(?:binding|dlopen|kill|chdir|setuid|setgid)\b", S.CRITICAL, "Process internals access"),
    _p(K.PROCESS_SPAWN, r"\bworker_threads\b", S.HIGH, "Worker thread creation"),
    _p(K.FILESYSTEM_MUTATION, r"\b(?:writeFile|writeFileSync|appendFile|appendFileSync|unlink|unlinkSync|rmSync|rmdir|rmdirSync|rename|renameSync|chmod|chmodSync|createWriteStream)\s*\(", S.HIGH, "File mutation"),
    _p(K.NETWORK_EGRESS, r"\bfetch\s*\(", S.MEDIUM, "HTTP fetch"),
    _p(K.NETWORK_EGRESS, r"\b(?:XMLHttpRequest|WebSocket)\b", S.MEDIUM, "Browser-style network client"),
    _p(K.NETWORK_EGRESS, r"""['"](?:node:)?(?:net|dgram|http|https|http2|tls)['"]""", S.HIGH, "Network module import"),
    _p(K.OBJECT_GRAPH_MUTATION, r"__proto__", S.CRITICAL, "Prototype chain access"),
    _p(K.OBJECT_GRAPH_MUTATION, r"\bconstructor\s*(?:\[|\.\s*constructor\b)", S.CRITICAL, "Constructor chain escape"),
    _p(K.OBJECT_GRAPH_MUTATION, r"\b(?:Object|Reflect)\.setPrototypeOf\b", S.HIGH, "Prototype replacement"),
    _p(K.OBJECT_GRAPH_MUTATION, r"\b(?:Object|Array|Function|String|Number|Promise)\.prototype\b", S.HIGH, "Built-in prototype mutation"),
    _p(K.OBJECT_GRAPH_MUTATION, r"\bglobalThis\s*[\.\[]", S.MEDIUM, "Global object access"),
    _p(K.ENVIRONMENT_ACCESS, r"\bprocess\.env\b", S.MEDIUM, "Environment variable access"),
    _p(K.UNBOUNDED_LOOP, r"\bwhile\s*\(\s*(?:true|1)\s*\)|\bfor\s*\(\s*;\s*;\s*\)", S.MEDIUM, "Loop without a visible bound", "Add an explicit iteration limit"),
]


def load_patterns(path: Path) -> dict[Dialect, list[ForbiddenPattern]]:
    """
    Load extra catalog entries from a JSON file.

    The file holds a list of objects with dialect, kind, pattern, severity,
    description and optional suggestion.

    Args:
        path: JSON pattern file

    Returns:
        Extra patterns per dialect
    """
    extra: dict[Dialect, list[ForbiddenPattern]] = {d: [] for d in Dialect}
    entries = json.loads(path.read_text(encoding="utf-8"))
    for entry in entries:
        dialects = [Dialect(entry["dialect"])] if entry.get("dialect") else list(Dialect)
        pattern = ForbiddenPattern(
            kind=IssueKind(entry["kind"]),
            regex=re.compile(entry["pattern"]),
            severity=Severity(entry["severity"]),
            description=entry.get("description", entry["pattern"]),
            suggestion=entry.get("suggestion", ""),
        )
        for dialect in dialects:
            extra[dialect].append(pattern)
    logger.info("validator_patterns_loaded", path=str(path), count=len(entries))
    return extra


class CodeValidator:
    """Scans artifact source for forbidden constructs and scores the findings."""

    def __init__(
        self,
        network_allowlist: Iterable[str] = (),
        approval_threshold: int = DEFAULT_APPROVAL_THRESHOLD,
        refusal_threshold: int = DEFAULT_REFUSAL_THRESHOLD,
        patterns_file: Path | None = None,
    ) -> None:
        """
        Initialize validator.

        Args:
            network_allowlist: Host patterns URLs may point at
            approval_threshold: Score at which approval becomes necessary
            refusal_threshold: Score at which execution is refused
            patterns_file: Optional JSON file with extra catalog entries
        """
        self._allowlist = list(network_allowlist)
        self._approval_threshold = approval_threshold
        self._refusal_threshold = refusal_threshold
        self._catalogs: dict[Dialect, list[ForbiddenPattern]] = {
            Dialect.PYTHON: list(PYTHON_PATTERNS),
            Dialect.TYPESCRIPT: list(TYPESCRIPT_PATTERNS),
        }
        if patterns_file is not None:
            for dialect, patterns in load_patterns(patterns_file).items():
                self._catalogs[dialect].extend(patterns)

    def host_allowed(self, host: str) -> bool:
        host = host.lower()
        return any(fnmatch(host, pattern.lower()) for pattern in self._allowlist)

    def scan(self, source: str, dialect: Dialect) -> list[SecurityIssue]:
        """
        Match source against the dialect's catalog and the network allowlist.

        Args:
            source: Program text
            dialect: Catalog to use

        Returns:
            Issues ordered by line, then severity
        """
        line_starts = [0] + [i + 1 for i, ch in enumerate(source) if ch == "\n"]

        def line_of(offset: int) -> int:
            low, high = 0, len(line_starts) - 1
            while low < high:
                mid = (low + high + 1) // 2
                if line_starts[mid] <= offset:
                    low = mid
                else:
                    high = mid - 1
            return low + 1

        issues: list[SecurityIssue] = []
        for pattern in self._catalogs[dialect]:
            for match in pattern.regex.finditer(source):
                issues.append(
                    SecurityIssue(
                        kind=pattern.kind,
                        severity=pattern.severity,
                        description=f"{pattern.description}: {match.group(0).strip()[:60]}",
                        line=line_of(match.start()),
                        suggestion=pattern.suggestion,
                    )
                )

        for match in _URL.finditer(source):
            host = match.group(1)
            if not self.host_allowed(host):
                issues.append(
                    SecurityIssue(
                        kind=IssueKind.NETWORK_EGRESS,
                        severity=Severity.HIGH,
                        description=f"Network address not on allowlist: {host}",
                        line=line_of(match.start()),
                        suggestion="Add the host to the network allowlist or remove the call",
                    )
                )

        issues.sort(key=lambda i: (i.line or 0, -i.severity.weight))
        return issues

    def validate(self, artifact: CodeArtifact) -> ValidationReport:
        """
        Validate an artifact before execution.

        Args:
            artifact: Synthesized program

        Returns:
            Report with capped score, approval and refusal decisions
        """
        issues = self.scan(artifact.source, artifact.dialect)
        total = sum(issue.severity.weight for issue in issues)
        has_critical = any(issue.severity is Severity.CRITICAL for issue in issues)

        refused = total >= self._refusal_threshold
        requires_approval = has_critical or total >= self._approval_threshold
        report = ValidationReport(
            secure=not (refused or requires_approval),
            risk_score=min(100, total),
            issues=issues,
            requires_approval=requires_approval,
            refused=refused,
        )

        log = logger.warning if issues else logger.debug
        log(
            "artifact_validated",
            dialect=artifact.dialect.value,
            digest=artifact.digest[:12],
            issues=len(issues),
            risk_score=report.risk_score,
            requires_approval=requires_approval,
            refused=refused,
        )
        return report
