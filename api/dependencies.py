"""
Runtime wiring: builds every collaborator once per process and hands them to
the routes through FastAPI dependencies.
"""

import hmac
from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastapi import Depends, Header, HTTPException, Request

from agent import AgentOrchestrator
from config import Settings, settings as default_settings
from integrations import ChatModel, MessageSender, WhatsAppSender
from knowledge import KnowledgeBase
from models import AgentConfig
from quota import QuotaLedger
from store import ConversationStore, CRMRepository, Database, DatabaseInbox
from tools import ToolRegistry
from webhooks import WebhookIngestion


@dataclass
class Runtime:
    """Process-wide collaborators."""
    settings: Settings
    db: Database
    store: ConversationStore
    crm: CRMRepository
    ledger: QuotaLedger
    inbox: DatabaseInbox
    registry: ToolRegistry
    sender: MessageSender
    orchestrator: AgentOrchestrator
    ingestion: WebhookIngestion
    knowledge: Any = None

    def shutdown(self) -> None:
        self.orchestrator.shutdown()
        self.registry.shutdown()
        if isinstance(self.sender, WhatsAppSender):
            self.sender.close()
        self.db.dispose()


def build_runtime(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    sender: Optional[MessageSender] = None,
    model_factory: Optional[Callable[[AgentConfig], ChatModel]] = None,
    knowledge: Any = None
) -> Runtime:
    """
    Build the runtime from settings.

    Tests pass their own database, sender and model factory; production
    uses the configured database, WhatsApp delivery and LLM provider.
    """
    settings = settings or default_settings
    db = db or Database(settings.database_url, settings.db_retry_attempts)
    db.create_all()

    if knowledge is None and settings.enable_knowledge_base:
        knowledge = KnowledgeBase(persist_directory=settings.chroma_persist_dir)

    store = ConversationStore(db)
    crm = CRMRepository(db)
    ledger = QuotaLedger(db)
    inbox = DatabaseInbox(db)
    registry = ToolRegistry(
        knowledge_enabled=knowledge is not None,
        settings=settings
    )
    sender = sender or WhatsAppSender(
        timeout=settings.delivery_timeout_seconds,
        base_url=settings.whatsapp_api_base_url
    )
    orchestrator = AgentOrchestrator(
        store=store,
        crm=crm,
        ledger=ledger,
        registry=registry,
        inbox=inbox,
        sender=sender,
        model_factory=model_factory,
        settings=settings,
        knowledge=knowledge
    )
    ingestion = WebhookIngestion(crm=crm, store=store, orchestrator=orchestrator, settings=settings)

    return Runtime(
        settings=settings,
        db=db,
        store=store,
        crm=crm,
        ledger=ledger,
        inbox=inbox,
        registry=registry,
        sender=sender,
        orchestrator=orchestrator,
        ingestion=ingestion,
        knowledge=knowledge
    )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def require_admin(
    x_admin_token: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime)
) -> None:
    """Operator routes need the configured admin token."""
    expected = runtime.settings.admin_api_token
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")
