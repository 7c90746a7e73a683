"""Persistence: database handle, conversation store, CRM repository, inbox sink."""

from store.database import Database, utc
from store.conversations import ConversationStore
from store.crm import CRMRepository
from store.inbox import InboxSink, DatabaseInbox

__all__ = [
    "Database", "utc", "ConversationStore", "CRMRepository",
    "InboxSink", "DatabaseInbox"
]
