# Ultima Agent: Tool-Using Conversational Agent
# Copyright (C) 2026 Pankaj Varma
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Knowledge Search Tool for Ultima_Agent
Searches the owner's stored knowledge chunks.

useEmbeddings=true (the default): cosine similarity between sentence-transformer
embeddings of the query and of each chunk (title + content).
useEmbeddings=false: fraction of distinct, non-stopword query terms present in the
chunk (title boosts by half a term).

Chunks at or above matchThreshold are returned, best first, with the owning
node's validation status surfaced.
"""

from typing import Any, Callable, Dict, List, Optional

from ..core.config import Config
from ..core.exceptions import PersistenceError
from ..core.utils import logger, tokenize_simple, truncate_text
from ..data.embedder import ChunkEmbedder, get_embedder

STOPWORDS = frozenset({
    'a', 'an', 'the', 'and', 'or', 'of', 'to', 'in', 'on', 'for', 'with', 'about', 'is', 'are',
    'was', 'were', 'be', 'what', 'which', 'who', 'how', 'why', 'when', 'do', 'does', 'did', 'i',
    'me', 'my', 'we', 'our', 'you', 'your', 'it', 'its', 'this', 'that', 'can', 'find', 'search',
    'show', 'tell', 'please', 'knowledge', 'base', 'notes', 'documents', 'files', 'saved', 'save'
})


def query_terms(query: str) -> List[str]:
    return list(dict.fromkeys(t for t in tokenize_simple(query) if t not in STOPWORDS and len(t) > 1))


def score_chunk(terms: List[str], title: str, content: str) -> float:
    if not terms:
        return 0.0
    content_tokens = set(tokenize_simple(content))
    title_tokens = set(tokenize_simple(title or ""))
    hits = sum(1.0 if t in content_tokens else 0.5 if t in title_tokens else 0.0 for t in terms)
    return round(min(hits / len(terms), 1.0), 3)


def chunk_text(chunk: Dict[str, Any]) -> str:
    """Text embedded for a chunk"""
    title = chunk.get("title") or ""
    content = chunk.get("content") or ""
    return f"{title}\n\n{content}" if title else content


def _as_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "no", "")
    return value is not False and value is not None


class KnowledgeSearchBackend:
    """knowledge-search tool over a DatabaseManager-compatible store"""

    def __init__(self, store, embedder_factory: Optional[Callable[[], ChunkEmbedder]] = None):
        self.store = store
        # Resolved on first semantic search so registering the tool never loads a model
        self.embedder_factory = embedder_factory or get_embedder

    def _format(self, chunk: Dict[str, Any], score: float) -> Dict[str, Any]:
        node_meta = chunk.get("node_metadata") or {}
        return {
            "id": chunk["id"],
            "node_id": chunk["node_id"],
            "title": chunk.get("title") or "Untitled",
            "snippet": truncate_text(chunk.get("content", ""), 500),
            "relevance_score": score,
            "source": node_meta.get("source", "Knowledge Base"),
            "metadata": {
                "validation_status": node_meta.get("validation_status", "unverified"),
                "is_tentative": bool(node_meta.get("is_tentative", False)),
                "type": chunk.get("node_type")
            }
        }

    def _lexical_scores(self, query: str, chunks: List[Dict[str, Any]]) -> List[float]:
        terms = query_terms(query)
        return [score_chunk(terms, c.get("title"), c.get("content", "")) for c in chunks]

    def _semantic_scores(self, query: str, chunks: List[Dict[str, Any]]) -> List[float]:
        similarities = self.embedder_factory().similarities(query, [chunk_text(c) for c in chunks])
        return [round(float(s), 3) for s in similarities]

    def search(
        self,
        query: str,
        user_id: str,
        limit: int = None,
        match_threshold: float = None,
        use_embeddings: bool = True
    ) -> List[Dict[str, Any]]:
        limit = limit or Config.knowledge.SEARCH_LIMIT
        threshold = Config.knowledge.MATCH_THRESHOLD if match_threshold is None else match_threshold

        chunks = self.store.list_knowledge_chunks(user_id)
        if not chunks:
            return []
        if use_embeddings:
            scores = self._semantic_scores(query, chunks)
        else:
            scores = self._lexical_scores(query, chunks)

        scored = [self._format(chunk, score) for chunk, score in zip(chunks, scores) if score > 0 and score >= threshold]
        scored.sort(key=lambda item: item["relevance_score"], reverse=True)
        return scored[:limit]

    def __call__(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = (params.get("query") or "").strip()
        user_id = params.get("userId") or params.get("user_id")
        if not query:
            return {"success": False, "error": "query is required"}
        if not user_id:
            return {"success": False, "error": "userId is required to search the knowledge base"}

        use_embeddings = _as_flag(params.get("useEmbeddings", True))
        try:
            results = self.search(
                query,
                user_id,
                limit=int(params.get("limit") or Config.knowledge.SEARCH_LIMIT),
                match_threshold=float(params.get("matchThreshold", Config.knowledge.MATCH_THRESHOLD)),
                use_embeddings=use_embeddings
            )
        except PersistenceError as e:
            return {"success": False, "error": str(e)}
        except (OSError, RuntimeError, ValueError) as e:
            # Model download or encoding failure
            logger.error(f"[KnowledgeSearch] Embedding search failed: {e}")
            return {"success": False, "error": f"Embedding search failed: {e}"}

        mode = "semantic" if use_embeddings else "lexical"
        logger.info(f"[KnowledgeSearch] '{query[:60]}' ({mode}) -> {len(results)} result(s)")
        return {"success": True, "results": results}
