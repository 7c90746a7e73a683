"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- File-based SQLite database per test
- Seeded organizations with agent configuration and pipeline stages
- Scripted chat model and recording message sender
- Orchestrator and FastAPI runtime wired to the fakes
"""

import os

# Keep test runs off the JSON log file and the background scheduler.
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("ENABLE_BACKGROUND_JOBS", "false")

import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import pytest

from agent import AgentOrchestrator
from config import Settings
from integrations import ChatModel, DeliveryResult, MessageSender, ModelResponse, ToolInvocation
from models import (
    AgentConfigRecord, BoardStage, NormalizedMessage, Organization, QuotaPolicy,
    VerticalConfigRecord
)
from quota import QuotaLedger
from store import ConversationStore, CRMRepository, Database, DatabaseInbox
from tools import ToolRegistry


MEDICAL_FIELDS = [
    {"key": "name", "question": "Qual é o seu nome?", "type": "text", "required": True},
    {"key": "convenio", "question": "Você tem convênio?", "type": "text", "required": True},
    {"key": "especialidade", "question": "Qual especialidade?", "type": "text", "required": True},
]

WHATSAPP_CONFIG = {
    "phone_number_id": "1234567890",
    "access_token": "cloud-token",
    "app_secret": "app-secret",
    "webhook_verify_token": "verify-me",
    "api_url": "https://evolution.example.com",
    "instance_name": "clinica",
    "api_key": "evo-key",
}


# ============================================================================
# Fakes
# ============================================================================


class FakeChatModel(ChatModel):
    """Chat model that replays a script of responses.

    Script entries are ModelResponse objects, exceptions to raise, or
    callables taking (system, messages, tools) and returning either.
    Once the script runs out every call answers with `default_text`.
    """

    provider = "fake"

    def __init__(self, script: Optional[List[Any]] = None, default_text: str = "Certo, posso ajudar!", delay: float = 0.0):
        super().__init__("fake-model")
        self.script = list(script or [])
        self.default_text = default_text
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def complete(self, system, messages, tools=None, temperature=0.7, max_tokens=500) -> ModelResponse:
        with self._lock:
            self.calls.append({"system": system, "messages": list(messages), "tools": tools})
            step = self.script.pop(0) if self.script else None
        if self.delay:
            time.sleep(self.delay)
        if callable(step) and not isinstance(step, ModelResponse):
            step = step(system, messages, tools)
        if isinstance(step, Exception):
            raise step
        if step is None:
            step = ModelResponse(text=self.default_text)
        if step.model is None:
            step.model = self.model
        return step


def tool_call(name: str, arguments: Dict[str, Any], call_id: str = None) -> ToolInvocation:
    return ToolInvocation(id=call_id or f"call_{uuid.uuid4().hex[:8]}", name=name, arguments=arguments)


def tool_round(*calls: ToolInvocation, tokens: int = 10) -> ModelResponse:
    return ModelResponse(tool_calls=list(calls), tokens_input=tokens, tokens_output=tokens)


def text_round(text: str, tokens: int = 10) -> ModelResponse:
    return ModelResponse(text=text, tokens_input=tokens, tokens_output=tokens)


class RecordingSender(MessageSender):
    """Message sender that records every send instead of calling WhatsApp."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def send(self, organization_id, to, text, provider, provider_config) -> DeliveryResult:
        with self._lock:
            self.sent.append({
                "organization_id": organization_id,
                "to": to,
                "text": text,
                "provider": provider,
            })
            if self.fail:
                return DeliveryResult(success=False, error="HTTP 500: upstream down")
            return DeliveryResult(success=True, message_id=f"wamid.OUT{len(self.sent)}")

    @property
    def texts(self) -> List[str]:
        return [item["text"] for item in self.sent]


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'agent.db'}",
        db_retry_attempts=5,
        admin_api_token="admin-secret",
        whatsapp_app_secret=None,
        agent_max_tool_rounds=3,
        model_timeout_seconds=2.0,
        tool_timeout_seconds=2.0,
        history_limit=20,
        worker_threads=4,
        quota_exceeded_behavior="silent",
        model_failure_behavior="fallback",
        enable_knowledge_base=False,
        enable_background_jobs=False,
        log_file="",
    )


@pytest.fixture
def db(settings):
    database = Database(settings.database_url, settings.db_retry_attempts)
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def store(db) -> ConversationStore:
    return ConversationStore(db)


@pytest.fixture
def crm(db) -> CRMRepository:
    return CRMRepository(db)


@pytest.fixture
def ledger(db) -> QuotaLedger:
    return QuotaLedger(db)


@pytest.fixture
def inbox(db) -> DatabaseInbox:
    return DatabaseInbox(db)


def _seed_org(db: Database, organization_id: str, business_type: str, **config) -> str:
    values = {
        "id": str(uuid.uuid4()),
        "organization_id": organization_id,
        "is_active": True,
        "whatsapp_provider": "whatsapp_cloud_api",
        "whatsapp_config": dict(WHATSAPP_CONFIG),
        "agent_name": "Ana",
        "timezone": "America/Sao_Paulo",
        "attend_outside_hours": True,
        "business_hours": {},
        "qualification_fields": MEDICAL_FIELDS,
        "auto_create_contact": True,
        "auto_create_deal": True,
        "default_board_id": "board-1",
        "transfer_rules": [],
    }
    values.update(config)

    def operation(session):
        session.add(Organization(id=organization_id, name=f"Org {organization_id}", business_type=business_type))
        session.add(AgentConfigRecord(**values))
        for order, label in enumerate(["Novo", "Qualificado", "Agendado"]):
            session.add(BoardStage(
                id=f"{organization_id}-stage-{order}",
                organization_id=organization_id,
                board_id="board-1",
                label=label,
                order=order,
            ))

    db.run(operation)
    return organization_id


@pytest.fixture
def seed_org(db) -> Callable[..., str]:
    """Seed an organization: seed_org("org-1", "medical_clinic", welcome_message=...)."""
    def seed(organization_id: str = "org-1", business_type: str = "medical_clinic", **config) -> str:
        return _seed_org(db, organization_id, business_type, **config)
    return seed


@pytest.fixture
def clinic(seed_org) -> str:
    return seed_org("org-clinic", "medical_clinic")


@pytest.fixture
def set_quota(db) -> Callable[..., None]:
    def apply(organization_id: str, request_limit: Optional[int] = None, token_limit: Optional[int] = None, period: str = "month"):
        def operation(session):
            session.merge(QuotaPolicy(
                organization_id=organization_id,
                period=period,
                request_limit=request_limit,
                token_limit=token_limit,
                alert_threshold_pct=80,
            ))
        db.run(operation)
    return apply


@pytest.fixture
def set_vertical(db) -> Callable[..., None]:
    def apply(business_type: str, text: str):
        def operation(session):
            session.merge(VerticalConfigRecord(
                business_type=business_type,
                ai_context={"system_prompt_vertical": text},
            ))
        db.run(operation)
    return apply


# ============================================================================
# Orchestrator Fixtures
# ============================================================================


def inbound(message: str = "quero agendar uma consulta", message_id: str = "wamid.ABC",
            sender: str = "+5511999999999", push_name: Optional[str] = "Maria") -> NormalizedMessage:
    return NormalizedMessage(**{
        "from": sender,
        "pushName": push_name,
        "message": message,
        "messageId": message_id,
    })


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def make_orchestrator(settings, store, crm, ledger, inbox, sender):
    """Build an orchestrator around a chat model; shuts its executors down afterwards."""
    built = []

    def build(model: ChatModel = None, model_factory=None, **overrides) -> AgentOrchestrator:
        effective = settings.model_copy(update=overrides) if overrides else settings
        registry = ToolRegistry(knowledge_enabled=False, settings=effective)
        orchestrator = AgentOrchestrator(
            store=store,
            crm=crm,
            ledger=ledger,
            registry=registry,
            inbox=inbox,
            sender=sender,
            model_factory=model_factory or (lambda agent_config: model),
            settings=effective,
        )
        built.append((orchestrator, registry))
        return orchestrator

    yield build

    for orchestrator, registry in built:
        orchestrator.shutdown()
        registry.shutdown()
