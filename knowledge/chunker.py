"""
Document chunking for the organization knowledge base.
Splits FAQ, service and policy documents into overlapping token windows.
"""

import tiktoken
from typing import List, Dict, Any
from pathlib import Path

from config import settings


DOC_TYPES = {
    "faq": "faq",
    "servicos": "service",
    "services": "service",
    "precos": "pricing",
    "pricing": "pricing",
    "politicas": "policy",
    "policies": "policy",
}


class DocumentChunker:
    """Chunks documents into overlapping segments."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
        encoding_name: str = "cl100k_base"
    ):
        """
        Initialize chunker.

        Args:
            chunk_size: Token size for chunks (default from settings)
            chunk_overlap: Overlap between chunks (default from settings)
            encoding_name: Tiktoken encoding name
        """
        self.chunk_size = chunk_size or settings.knowledge_chunk_size
        self.chunk_overlap = chunk_overlap if chunk_overlap is not None else settings.knowledge_chunk_overlap
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        self.encoding = tiktoken.get_encoding(encoding_name)

    def chunk_text(
        self,
        text: str,
        metadata: Dict[str, Any] = None
    ) -> List[Dict[str, Any]]:
        """
        Chunk a single text document.

        Args:
            text: Text to chunk
            metadata: Optional metadata to attach to chunks

        Returns:
            List of chunk dictionaries with text and metadata
        """
        tokens = self.encoding.encode(text)

        chunks = []
        start_idx = 0
        step = self.chunk_size - self.chunk_overlap

        while start_idx < len(tokens):
            chunk_tokens = tokens[start_idx:start_idx + self.chunk_size]
            chunks.append({
                "text": self.encoding.decode(chunk_tokens),
                "token_count": len(chunk_tokens),
                "chunk_index": len(chunks),
                "metadata": dict(metadata or {})
            })
            if start_idx + self.chunk_size >= len(tokens):
                break
            start_idx += step

        return chunks

    def chunk_file(
        self,
        file_path: Path,
        organization_id: str,
        doc_type: str = None
    ) -> List[Dict[str, Any]]:
        """
        Chunk a file for one organization.

        The document type is taken from the parent directory name
        (faq, servicos, precos, politicas) unless given.
        """
        text = file_path.read_text(encoding="utf-8")

        if not doc_type:
            doc_type = DOC_TYPES.get(file_path.parent.name.lower(), "general")

        metadata = {
            "organization_id": organization_id,
            "source_file": str(file_path),
            "doc_title": file_path.stem,
            "doc_type": doc_type,
        }

        return self.chunk_text(text, metadata)

    def chunk_directory(
        self,
        directory_path: Path,
        organization_id: str,
        file_extensions: List[str] = None
    ) -> List[Dict[str, Any]]:
        """Chunk all matching files under a directory, recursively."""
        if file_extensions is None:
            file_extensions = [".md", ".txt"]

        files = sorted(
            f for f in directory_path.rglob("*")
            if f.is_file() and f.suffix in file_extensions
        )

        all_chunks = []
        for file_path in files:
            all_chunks.extend(self.chunk_file(file_path, organization_id))

        return all_chunks
