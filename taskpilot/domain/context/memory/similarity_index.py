from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum
import asyncio

import numpy as np
import structlog
from langchain_core.embeddings import Embeddings

from taskpilot.domain.models.agent_state import IndexEntry, RetrievedContext, TaskRecord
from taskpilot.domain.models.errors import IndexNotReady
from taskpilot.domain.models.results import Fail
from taskpilot.infrastructure.clients.record_client import RecordClient
from taskpilot.infrastructure.resilience.retry import RetryPolicy

logger = structlog.get_logger(__name__)


class IndexState(str, Enum):
    """Lifecycle of one user's index"""
    EMPTY = "empty"
    BUILDING = "building"
    READY = "ready"


class _Snapshot:
    """Immutable entry set, swapped in as a whole"""

    def __init__(self, entries: List[IndexEntry]):
        self.entries = entries
        self.built_at = datetime.utcnow()
        if entries:
            matrix = np.array([entry.embedding for entry in entries], dtype=np.float32)
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            self.normalized = matrix / (norms + 1e-8)
        else:
            self.normalized = None


class _UserIndex:
    def __init__(self):
        self.state = IndexState.EMPTY
        self.snapshot: Optional[_Snapshot] = None
        # bumped on invalidate; a build started under an older generation stays stale
        self.generation = 0
        self.built_generation = -1

    @property
    def stale(self) -> bool:
        return self.built_generation != self.generation


class SimilarityIndex:
    """Per-user in-memory embedding index over the user's task records"""

    def __init__(
        self,
        record_client: RecordClient,
        embeddings: Embeddings,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.record_client = record_client
        self.embeddings = embeddings
        self.retry_policy = retry_policy or RetryPolicy(attempts=1)
        self._indexes: Dict[str, _UserIndex] = {}
        self._inflight: Dict[str, "asyncio.Future[int]"] = {}
        # guards the in-flight map only, never held across I/O
        self._lock = asyncio.Lock()

    def state(self, user_id: str) -> IndexState:
        """Current state of a user's index"""
        index = self._indexes.get(user_id)
        return index.state if index else IndexState.EMPTY

    def entry_count(self, user_id: str) -> int:
        index = self._indexes.get(user_id)
        if not index or not index.snapshot:
            return 0
        return len(index.snapshot.entries)

    def invalidate(self, user_id: str):
        """Mark a user's index stale so the next ensure_ready rebuilds it"""

        index = self._indexes.get(user_id)
        if index:
            index.generation += 1
            logger.debug("Similarity index invalidated", user_id=user_id)

    async def ensure_ready(self, user_id: str, credential: str) -> int:
        """
        Build the user's index unless it is already READY and fresh.
        Concurrent callers for one user share a single in-flight build.
        Returns the number of entries.
        """

        async with self._lock:
            index = self._indexes.setdefault(user_id, _UserIndex())
            if index.state == IndexState.READY and not index.stale:
                return len(index.snapshot.entries) if index.snapshot else 0

            build = self._inflight.get(user_id)
            if build is None:
                build = asyncio.ensure_future(self._build(user_id, credential, index))
                self._inflight[user_id] = build
                build.add_done_callback(lambda done: self._forget_build(user_id, done))

        # a cancelled caller must not cancel the build other callers wait on
        return await asyncio.shield(build)

    async def refresh(self, user_id: str, credential: str) -> int:
        """Force a rebuild of the user's index"""

        index = self._indexes.setdefault(user_id, _UserIndex())
        self.invalidate(user_id)
        count = await self.ensure_ready(user_id, credential)
        if index.stale:
            # joined a build that started before the invalidation
            count = await self.ensure_ready(user_id, credential)
        return count

    async def query(self, user_id: str, text: str, k: int = 5) -> List[RetrievedContext]:
        """
        Return at most k entries most similar to text.
        Ties are broken by most recently updated record first.
        """

        index = self._indexes.get(user_id)
        if index is None or index.snapshot is None:
            raise IndexNotReady(user_id, "no successful build yet")

        # read the snapshot once so a concurrent swap cannot mix entry sets
        snapshot = index.snapshot
        if k <= 0 or not snapshot.entries:
            return []

        query_vec = np.array(await self.embeddings.aembed_query(text), dtype=np.float32)
        query_vec = query_vec / (np.linalg.norm(query_vec) + 1e-8)
        similarities = snapshot.normalized @ query_vec

        ranked = sorted(
            range(len(snapshot.entries)),
            key=lambda i: (
                -round(float(similarities[i]), 9),
                -_timestamp(snapshot.entries[i].updated_at),
            ),
        )

        return [
            RetrievedContext(
                record_id=snapshot.entries[i].record_id,
                source_text=snapshot.entries[i].source_text,
                score=float(similarities[i]),
            )
            for i in ranked[:k]
        ]

    def _forget_build(self, user_id: str, done: "asyncio.Future[int]"):
        if self._inflight.get(user_id) is done:
            self._inflight.pop(user_id, None)

    async def _build(self, user_id: str, credential: str, index: _UserIndex) -> int:
        """List, embed and swap in a fresh entry set"""

        generation = index.generation
        previous_state = index.state
        index.state = IndexState.BUILDING
        logger.info("Building similarity index", user_id=user_id)

        try:
            result = await self.retry_policy.run_result(
                lambda: self.record_client.list(credential),
                name="index_list_records",
            )
            if isinstance(result, Fail):
                raise IndexNotReady(user_id, f"record listing failed ({result.kind.value})")

            records: List[TaskRecord] = [r for r in result.value if r.owner_id == user_id]
            texts = [record.embedding_text() for record in records]
            vectors = await self.embeddings.aembed_documents(texts) if texts else []
            if len(vectors) != len(records):
                raise IndexNotReady(user_id, "embedding count mismatch")

        except IndexNotReady:
            index.state = previous_state if index.snapshot is not None else IndexState.EMPTY
            raise
        except asyncio.CancelledError:
            index.state = previous_state if index.snapshot is not None else IndexState.EMPTY
            raise
        except Exception as e:
            index.state = previous_state if index.snapshot is not None else IndexState.EMPTY
            logger.error("Similarity index build failed", user_id=user_id, error=str(e))
            raise IndexNotReady(user_id, str(e)) from e

        entries = [
            IndexEntry(
                record_id=record.id,
                user_id=user_id,
                source_text=text,
                embedding=list(vector),
                updated_at=record.updated_at or record.created_at,
            )
            for record, text, vector in zip(records, texts, vectors)
        ]

        # single assignment, readers see either the old or the new set
        index.snapshot = _Snapshot(entries)
        index.built_generation = generation
        index.state = IndexState.READY

        logger.info("Similarity index ready", user_id=user_id, entries=len(entries), stale=index.stale)
        return len(entries)


def _timestamp(value: Optional[datetime]) -> float:
    if value is None:
        return float("-inf")
    return value.timestamp()
