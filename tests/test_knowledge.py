"""Tests for the organization knowledge base and the search_knowledge tool."""

import uuid

import chromadb
import pytest

from integrations import EmbeddingProvider
from knowledge import DocumentChunker, KnowledgeBase
from models import AgentConfig
from models.errors import ToolError
from tools import ToolContext, ToolRegistry


class KeywordEmbedding(EmbeddingProvider):
    """Deterministic embeddings: one dimension per keyword."""

    KEYWORDS = ["preço", "convênio", "horário", "endereço"]

    def embed(self, texts):
        vectors = []
        for text in texts:
            lowered = text.lower()
            vectors.append([1.0 if word in lowered else 0.0 for word in self.KEYWORDS] + [0.1])
        return vectors


@pytest.fixture
def knowledge_base():
    client = chromadb.EphemeralClient()
    name = f"kb_{uuid.uuid4().hex[:12]}"
    base = KnowledgeBase(collection_name=name, embedding_provider=KeywordEmbedding(), client=client)
    yield base
    client.delete_collection(name)


def chunk(text, title, doc_type="faq", index=0):
    return {
        "text": text,
        "chunk_index": index,
        "metadata": {"source_file": f"{title}.md", "doc_title": title, "doc_type": doc_type},
    }


class TestKnowledgeBase:

    def test_search_is_scoped_to_organization(self, knowledge_base):
        knowledge_base.add_chunks("org-a", [
            chunk("Aceitamos convênio Unimed e Amil.", "convenios"),
            chunk("Nosso horário é de 8h às 18h.", "horarios"),
        ])
        knowledge_base.add_chunks("org-b", [chunk("Não aceitamos convênio.", "convenios")])

        hits = knowledge_base.search("org-a", "vocês aceitam convênio?", top_k=1)

        assert [hit["title"] for hit in hits] == ["convenios"]
        assert "Unimed" in hits[0]["text"]
        assert hits[0]["doc_type"] == "faq"

    def test_reingesting_overwrites_chunks(self, knowledge_base):
        knowledge_base.add_chunks("org-a", [chunk("Consulta custa R$ 200, preço particular.", "precos")])
        knowledge_base.add_chunks("org-a", [chunk("Consulta custa R$ 250, preço particular.", "precos")])

        assert knowledge_base.count() == 1
        assert "250" in knowledge_base.search("org-a", "qual o preço?", top_k=1)[0]["text"]

    def test_clear_removes_one_organization(self, knowledge_base):
        knowledge_base.add_chunks("org-a", [chunk("Endereço: Rua A, 10.", "endereco")])
        knowledge_base.add_chunks("org-b", [chunk("Endereço: Rua B, 20.", "endereco")])

        knowledge_base.clear("org-a")

        assert knowledge_base.count() == 1
        assert knowledge_base.search("org-a", "endereço", top_k=1) == []


class TestChunker:

    @pytest.fixture
    def chunker(self):
        try:
            return DocumentChunker(chunk_size=20, chunk_overlap=5)
        except Exception as e:
            pytest.skip(f"tiktoken encoding unavailable: {e}")

    def test_overlapping_windows(self, chunker):
        text = " ".join(f"palavra{i}" for i in range(60))

        chunks = chunker.chunk_text(text, {"doc_type": "faq"})

        assert len(chunks) > 1
        assert all(c["token_count"] <= 20 for c in chunks)
        assert [c["chunk_index"] for c in chunks] == list(range(len(chunks)))
        assert chunks[0]["metadata"] == {"doc_type": "faq"}

    def test_doc_type_from_directory(self, chunker, tmp_path):
        (tmp_path / "precos").mkdir()
        (tmp_path / "precos" / "consultas.md").write_text("Consulta particular: R$ 200.", encoding="utf-8")

        chunks = chunker.chunk_directory(tmp_path, "org-a")

        assert chunks[0]["metadata"]["doc_type"] == "pricing"
        assert chunks[0]["metadata"]["doc_title"] == "consultas"

    def test_overlap_must_be_smaller_than_size(self):
        with pytest.raises(ValueError):
            DocumentChunker(chunk_size=10, chunk_overlap=10)


class TestSearchKnowledgeTool:

    def test_results_are_returned_to_the_model(self, knowledge_base, store):
        knowledge_base.add_chunks("org-a", [chunk("Aceitamos convênio Unimed.", "convenios")])
        conversation = store.resolve_or_create_conversation("org-a", "+5511999999999")
        registry = ToolRegistry(timeout=2.0, knowledge_enabled=True)
        context = ToolContext(
            organization_id="org-a",
            conversation_id=conversation.id,
            agent_config=AgentConfig(organization_id="org-a"),
            crm=None,
            conversations=store,
            inbox=None,
            knowledge=knowledge_base,
        )
        try:
            result = registry.dispatch("search_knowledge", {"query": "convênio", "top_k": 1}, context)
        finally:
            registry.shutdown()

        assert result.success
        assert result.data["results"] == [{"title": "convenios", "type": "faq", "text": "Aceitamos convênio Unimed."}]

    def test_missing_knowledge_base(self, store):
        conversation = store.resolve_or_create_conversation("org-a", "+5511999999999")
        registry = ToolRegistry(timeout=2.0, knowledge_enabled=True)
        context = ToolContext(
            organization_id="org-a",
            conversation_id=conversation.id,
            agent_config=AgentConfig(organization_id="org-a"),
            crm=None,
            conversations=store,
            inbox=None,
        )
        try:
            result = registry.dispatch("search_knowledge", {"query": "convênio"}, context)
        finally:
            registry.shutdown()

        assert result.error_kind == ToolError.NOT_AVAILABLE
