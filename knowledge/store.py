"""
Knowledge base on ChromaDB.

One collection holds every organization's documents; each chunk carries its
organization_id in metadata and every query filters on it.
"""

import chromadb
from chromadb.config import Settings as ChromaSettings
from typing import List, Dict, Any, Optional
from pathlib import Path

from config import settings
from integrations.llm_provider import EmbeddingProvider, get_embedding_provider
from observability import trace_logger


class KnowledgeBase:
    """Organization-scoped semantic search over ingested documents."""

    def __init__(
        self,
        persist_directory: str = None,
        collection_name: str = "knowledge_base",
        embedding_provider: Optional[EmbeddingProvider] = None,
        client=None
    ):
        """
        Initialize the knowledge base.

        Args:
            persist_directory: Directory for persistent storage
            collection_name: ChromaDB collection name
            embedding_provider: Embedding backend (configured provider by default)
            client: Existing ChromaDB client (persistent client by default)
        """
        if client is None:
            self.persist_directory = persist_directory or settings.chroma_persist_dir
            Path(self.persist_directory).mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(
                path=self.persist_directory,
                settings=ChromaSettings(anonymized_telemetry=False)
            )
        self.client = client
        self.collection = self.client.get_or_create_collection(
            name=collection_name,
            metadata={"description": "Organization knowledge base"}
        )
        self.embedding_provider = embedding_provider or get_embedding_provider()

    def add_chunks(self, organization_id: str, chunks: List[Dict[str, Any]]) -> List[str]:
        """
        Add chunks produced by DocumentChunker.

        Ids are derived from source file and chunk index, so re-ingesting a
        document overwrites its chunks instead of duplicating them.
        """
        if not chunks:
            return []

        documents = [chunk["text"] for chunk in chunks]
        metadatas = [
            {**chunk["metadata"], "organization_id": organization_id, "chunk_index": chunk["chunk_index"]}
            for chunk in chunks
        ]
        ids = [
            f"{organization_id}:{chunk['metadata'].get('source_file', 'inline')}:{chunk['chunk_index']}"
            for chunk in chunks
        ]

        try:
            self.collection.upsert(
                embeddings=self.embedding_provider.embed(documents),
                documents=documents,
                metadatas=metadatas,
                ids=ids
            )
        except Exception as e:
            trace_logger.error_occurred(
                error_type="knowledge_add_error",
                error_message=str(e),
                context={"organization_id": organization_id, "num_documents": len(documents)}
            )
            raise

        trace_logger.info(
            f"Added {len(documents)} chunks to knowledge base",
            organization_id=organization_id,
            collection=self.collection.name
        )
        return ids

    def search(self, organization_id: str, query: str, top_k: int = None) -> List[Dict[str, Any]]:
        """Return the closest chunks for a query within one organization."""
        top_k = top_k or settings.knowledge_top_k
        query_embedding = self.embedding_provider.embed([query])[0]

        try:
            results = self.collection.query(
                query_embeddings=[query_embedding],
                n_results=top_k,
                where={"organization_id": organization_id}
            )
        except Exception as e:
            trace_logger.error_occurred(
                error_type="knowledge_query_error",
                error_message=str(e),
                context={"organization_id": organization_id, "top_k": top_k}
            )
            raise

        hits = []
        if results and results.get("ids") and results["ids"][0]:
            distances = (results.get("distances") or [[None] * len(results["ids"][0])])[0]
            for i, doc_id in enumerate(results["ids"][0]):
                metadata = results["metadatas"][0][i] or {}
                hits.append({
                    "id": doc_id,
                    "text": results["documents"][0][i],
                    "title": metadata.get("doc_title"),
                    "doc_type": metadata.get("doc_type"),
                    "distance": distances[i],
                })
        return hits

    def clear(self, organization_id: str) -> None:
        """Remove every chunk of one organization."""
        self.collection.delete(where={"organization_id": organization_id})
        trace_logger.info(
            "Cleared organization knowledge base",
            organization_id=organization_id,
            collection=self.collection.name
        )

    def count(self) -> int:
        """Get document count in collection."""
        return self.collection.count()
