"""Vector store for embedding-based retrieval and relational entity lookup."""
import os
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import chromadb
from chromadb.config import Settings as ChromaSettings
from loguru import logger

from config.settings import Settings, settings as default_settings
from core.errors import StoreConnectionError, StoreTimeoutError, ValidationError
from routing.router import StoreHealth
from storage.database import Database
from storage.repository import MirrorRepository

STORE_NAME = "postgres"


@dataclass
class VectorMatch:
    """One similarity hit."""
    id: str
    score: float
    collection: str
    content: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "score": self.score,
            "collection": self.collection,
            "content": self.content,
            "metadata": self.metadata,
        }


class VectorStore:
    """
    Vector/relational execution layer.

    Similarity search runs against ChromaDB cosine collections; entity
    lookup reads the relational mirror tables. Beyond parameter validation
    this layer adds no logic of its own.
    """

    def __init__(
        self,
        database: Database,
        chroma_client: Optional[Any] = None,
        config: Optional[Settings] = None,
    ):
        """
        Initialize vector store.

        Args:
            database: Opened relational database
            chroma_client: ChromaDB client (built from settings if omitted)
            config: Settings override
        """
        self.logger = logger.bind(name=self.__class__.__name__)
        self.settings = config or default_settings
        self.database = database
        self.repository = MirrorRepository(database)
        self.chroma_client = chroma_client or self._create_chroma_client()
        # chromadb clients have no request timeout of their own
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="chroma")
        self.collections = {
            "chunks": self.settings.chroma_chunk_collection,
            "entities": self.settings.chroma_entity_collection,
        }
        self.logger.info(f"Vector store initialized with collections: {list(self.collections.values())}")

    def _create_chroma_client(self):
        chroma_settings = ChromaSettings(anonymized_telemetry=False)
        if self.settings.chroma_host:
            return chromadb.HttpClient(
                host=self.settings.chroma_host,
                port=self.settings.chroma_port,
                settings=chroma_settings,
            )
        os.makedirs(self.settings.chroma_persist_dir, exist_ok=True)
        return chromadb.PersistentClient(path=self.settings.chroma_persist_dir, settings=chroma_settings)

    def _call(self, fn, *args, **kwargs):
        """Run a Chroma call, giving up after ``chroma_timeout`` seconds."""
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.settings.chroma_timeout)
        except FutureTimeout:
            future.cancel()
            raise StoreTimeoutError(
                STORE_NAME, f"vector index call exceeded {self.settings.chroma_timeout}s"
            ) from None

    def close(self):
        self._executor.shutdown(wait=False)

    def _collection(self, collection: str):
        if collection not in self.collections:
            raise ValidationError(f"Unknown collection {collection!r}, expected one of {sorted(self.collections)}")
        return self.chroma_client.get_or_create_collection(
            name=self.collections[collection],
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )

    def similarity_search(
        self,
        embedding: Sequence[float],
        limit: int = 10,
        threshold: Optional[float] = None,
        collection: str = "chunks",
        where: Optional[Dict[str, Any]] = None,
    ) -> List[VectorMatch]:
        """
        Perform similarity search.

        Args:
            embedding: Query vector (produced outside this system)
            limit: Number of results to return, must be > 0
            threshold: Minimum cosine similarity in [0, 1]
            collection: "chunks" or "entities"
            where: Optional metadata filter

        Returns:
            Matches ordered by similarity, highest first
        """
        if not embedding:
            raise ValidationError("embedding must be a non-empty vector")
        if not isinstance(limit, int) or limit <= 0:
            raise ValidationError(f"limit must be a positive integer, got {limit!r}")
        if threshold is None:
            threshold = self.settings.default_similarity_threshold
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError(f"threshold must be within [0, 1], got {threshold!r}")
        limit = min(limit, self.settings.max_result_limit)

        try:
            result = self._call(
                lambda: self._collection(collection).query(
                    query_embeddings=[[float(x) for x in embedding]],
                    n_results=limit,
                    where=where,
                    include=["metadatas", "documents", "distances"],
                )
            )
        except (ValidationError, StoreTimeoutError):
            raise
        except Exception as e:
            self.logger.error(f"Error in similarity search: {e}")
            raise StoreConnectionError(STORE_NAME, f"vector index query failed: {e}") from e

        ids = (result.get("ids") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]
        metadatas = (result.get("metadatas") or [None])[0] or [None] * len(ids)
        documents = (result.get("documents") or [None])[0] or [None] * len(ids)

        matches = []
        for match_id, distance, metadata, content in zip(ids, distances, metadatas, documents):
            score = 1.0 - float(distance)
            if score < threshold:
                continue
            matches.append(VectorMatch(
                id=match_id,
                score=score,
                collection=collection,
                content=content,
                metadata=dict(metadata or {}),
            ))
        matches.sort(key=lambda m: m.score, reverse=True)

        self.logger.info(f"Retrieved {len(matches)} results above threshold {threshold}")
        return matches

    def entity_lookup(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one entity row (with its graph cross-reference) by entity id."""
        if not entity_id:
            raise ValidationError("entity_id is required")
        return self.repository.get_entity(entity_id)

    def index_embeddings(
        self,
        collection: str,
        ids: List[str],
        embeddings: List[List[float]],
        metadatas: Optional[List[Dict[str, Any]]] = None,
        documents: Optional[List[str]] = None,
    ):
        """Upsert vectors into a collection in one batch."""
        if len(ids) != len(embeddings):
            raise ValidationError("ids and embeddings must have the same length")
        if metadatas is not None and len(metadatas) != len(ids):
            raise ValidationError("metadatas must match ids in length")
        if documents is not None and len(documents) != len(ids):
            raise ValidationError("documents must match ids in length")
        if not ids:
            return
        self._call(
            lambda: self._collection(collection).upsert(
                ids=ids,
                embeddings=embeddings,
                metadatas=metadatas,
                documents=documents,
            )
        )
        self.logger.info(f"Indexed {len(ids)} vectors into {collection}")

    def check_health(self) -> StoreHealth:
        """Probe the relational database and the vector index. Never raises."""
        started = time.perf_counter()
        try:
            self.database.ping()
            self._call(self.chroma_client.heartbeat)
            return StoreHealth(
                healthy=True,
                latency_ms=(time.perf_counter() - started) * 1000,
                checked_at=datetime.now(timezone.utc),
            )
        except Exception as e:
            self.logger.warning(f"Vector store health check failed: {e}")
            return StoreHealth(
                healthy=False,
                latency_ms=-1,
                error=str(e) or e.__class__.__name__,
                checked_at=datetime.now(timezone.utc),
            )
