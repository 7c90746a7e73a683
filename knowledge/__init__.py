"""Organization knowledge base (ChromaDB) and document chunking."""

from knowledge.chunker import DocumentChunker
from knowledge.store import KnowledgeBase

__all__ = ["DocumentChunker", "KnowledgeBase"]
