"""Tool discovery combining a lexical inverted index with embeddings."""

from collections.abc import Iterable
from dataclasses import dataclass, field

import numpy as np
import structlog

from ..models.tool import DiscoveryResult, ToolDescriptor
from .embedding_service import Embedder, HashingEmbedder, cosine_similarity
from .text_utils import similarity, tokenize
from .tool_registry import ToolRegistry

logger = structlog.get_logger()

LEXICAL_WEIGHT = 0.6
SEMANTIC_WEIGHT = 0.4
NAME_WEIGHT = 0.4
DESCRIPTION_WEIGHT = 0.3
PARAMETER_WEIGHT = 0.3
DEFAULT_THRESHOLD = 0.3

FIELD_NAME = "name"
FIELD_DESCRIPTION = "description"
FIELD_PARAMETER = "parameter"


def _normalize_name(text: str) -> str:
    return " ".join(tokenize(text, keep_stopwords=True))


def name_score(query: str, name: str) -> float:
    """
    Score how well a query matches a tool name.

    Exact match 1.0, prefix 0.9, substring 0.7, otherwise the best
    normalized inverse edit distance between query and name tokens.
    """
    normalized_query = _normalize_name(query)
    normalized_name = _normalize_name(name)
    if not normalized_query or not normalized_name:
        return 0.0
    if normalized_query == normalized_name:
        return 1.0
    if normalized_name.startswith(normalized_query):
        return 0.9
    if normalized_query in normalized_name or normalized_name in normalized_query:
        return 0.7

    query_tokens = tokenize(query) or normalized_query.split()
    name_tokens = normalized_name.split()
    return max(similarity(q, n) for q in query_tokens for n in name_tokens)


@dataclass
class _Snapshot:
    descriptors: dict[str, ToolDescriptor] = field(default_factory=dict)
    names: list[str] = field(default_factory=list)
    postings: dict[str, dict[str, set[str]]] = field(default_factory=dict)
    embeddings: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))


class DiscoveryIndex:
    """Ranks descriptors against natural-language queries."""

    def __init__(
        self,
        embedder: Embedder | None = None,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> None:
        """
        Initialize discovery index.

        Args:
            embedder: Semantic backend; defaults to the hashing embedder
            threshold: Minimum combined relevance for a result
        """
        self._embedder = embedder or HashingEmbedder()
        self._threshold = threshold
        self._snapshot = _Snapshot()

    def build(self, source: ToolRegistry | Iterable[ToolDescriptor]) -> None:
        """
        Build the lexical and semantic layers; replaces any previous index.

        Args:
            source: Registry or descriptors to index
        """
        descriptors = source.all() if isinstance(source, ToolRegistry) else list(source)
        snapshot = _Snapshot()
        for descriptor in sorted(descriptors, key=lambda d: d.name):
            snapshot.descriptors[descriptor.name] = descriptor
            snapshot.names.append(descriptor.name)
            self._add_postings(snapshot, descriptor)

        texts = [d.description or d.name for d in snapshot.descriptors.values()]
        snapshot.embeddings = self._embedder.embed(texts) if texts else np.zeros((0, 0))
        self._snapshot = snapshot

        logger.info(
            "discovery_index_built",
            tools=len(snapshot.names),
            terms=len(snapshot.postings),
        )

    rebuild = build

    @staticmethod
    def _add_postings(snapshot: _Snapshot, descriptor: ToolDescriptor) -> None:
        def add(term: str, field_name: str) -> None:
            snapshot.postings.setdefault(term, {}).setdefault(descriptor.name, set()).add(
                field_name
            )

        for term in tokenize(descriptor.name):
            add(term, FIELD_NAME)
        for term in tokenize(descriptor.description):
            add(term, FIELD_DESCRIPTION)
        for parameter in descriptor.parameters:
            for term in tokenize(parameter.name):
                add(term, FIELD_PARAMETER)

    def lookup(self, term: str) -> set[str]:
        """Tool names whose indexed fields contain the term."""
        return set(self._snapshot.postings.get(term.lower(), {}))

    def lexical_score(self, query: str, descriptor: ToolDescriptor) -> float:
        """Weighted blend of name, description and parameter matches."""
        query_tokens = tokenize(query)
        if not query_tokens:
            return 0.0
        return self._lexical_score(self._snapshot, query, query_tokens, descriptor)

    @staticmethod
    def _lexical_score(
        snapshot: _Snapshot,
        query: str,
        query_tokens: list[str],
        descriptor: ToolDescriptor,
    ) -> float:
        def fraction(field_name: str) -> float:
            hits = sum(
                1
                for token in query_tokens
                if field_name in snapshot.postings.get(token, {}).get(descriptor.name, ())
            )
            return hits / len(query_tokens)

        score = (
            NAME_WEIGHT * name_score(query, descriptor.name)
            + DESCRIPTION_WEIGHT * fraction(FIELD_DESCRIPTION)
            + PARAMETER_WEIGHT * fraction(FIELD_PARAMETER)
        )
        return min(1.0, score)

    def search(self, query: str, limit: int = 5) -> list[DiscoveryResult]:
        """
        Rank indexed descriptors against a query.

        Args:
            query: Natural-language intent
            limit: Maximum number of results

        Returns:
            Results above the threshold, best first; ties broken by lexical
            score then name
        """
        snapshot = self._snapshot
        query_tokens = tokenize(query)
        if not query_tokens or not snapshot.names or limit <= 0:
            return []

        query_vector = self._embedder.embed([query])[0]
        semantic = cosine_similarity(query_vector, snapshot.embeddings)

        results: list[DiscoveryResult] = []
        for position, name in enumerate(snapshot.names):
            descriptor = snapshot.descriptors[name]
            lexical = self._lexical_score(snapshot, query, query_tokens, descriptor)
            semantic_score = float(semantic[position])
            combined = LEXICAL_WEIGHT * lexical + SEMANTIC_WEIGHT * semantic_score
            if combined < self._threshold:
                continue
            results.append(
                DiscoveryResult(
                    descriptor=descriptor,
                    relevance=round(min(1.0, combined), 6),
                    lexical_score=round(lexical, 6),
                    semantic_score=round(semantic_score, 6),
                )
            )

        results.sort(key=lambda r: (-r.relevance, -r.lexical_score, r.descriptor.name))
        logger.debug(
            "discovery_search",
            query=query,
            candidates=len(snapshot.names),
            matches=len(results),
        )
        return results[:limit]

    def __len__(self) -> int:
        return len(self._snapshot.names)
