"""
Script to ingest an organization's documents into the knowledge base.
Run with ENABLE_KNOWLEDGE_BASE=true so the agent offers search_knowledge.

Usage:
    python scripts/ingest_knowledge.py <organization_id> [knowledge_dir]
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from knowledge import DocumentChunker, KnowledgeBase
from observability import trace_logger


def ingest_knowledge_base(organization_id: str, knowledge_dir: str = "./knowledge_base") -> bool:
    """
    Replace an organization's knowledge base with the documents in a directory.

    Args:
        organization_id: Organization that owns the documents
        knowledge_dir: Directory with .md/.txt files (faq/, servicos/, precos/, politicas/)
    """
    kb_path = Path(knowledge_dir)

    if not kb_path.exists():
        print(f"Error: Knowledge base directory not found: {knowledge_dir}")
        return False

    print(f"Organization: {organization_id}")
    print(f"Knowledge base directory: {kb_path.absolute()}")

    chunker = DocumentChunker()
    knowledge_base = KnowledgeBase()

    print("\nClearing existing documents...")
    knowledge_base.clear(organization_id)

    print("\nChunking documents...")
    all_chunks = chunker.chunk_directory(kb_path, organization_id)
    print(f"Generated {len(all_chunks)} chunks")

    if not all_chunks:
        print("Warning: No chunks generated. Check that documents exist in the directory")
        return False

    try:
        knowledge_base.add_chunks(organization_id, all_chunks)
    except Exception as e:
        print(f"\n✗ Error during ingestion: {str(e)}")
        trace_logger.error_occurred(
            error_type="ingestion_error",
            error_message=str(e),
            context={"organization_id": organization_id}
        )
        return False

    print(f"\n✓ Successfully ingested {len(all_chunks)} chunks")

    doc_types = {}
    for chunk in all_chunks:
        doc_type = chunk["metadata"].get("doc_type", "unknown")
        doc_types[doc_type] = doc_types.get(doc_type, 0) + 1

    print("\nIngestion summary by document type:")
    for doc_type, count in sorted(doc_types.items()):
        print(f"  {doc_type}: {count} chunks")

    return True


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(2)

    success = ingest_knowledge_base(*sys.argv[1:3])
    sys.exit(0 if success else 1)
