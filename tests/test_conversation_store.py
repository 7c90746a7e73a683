"""Tests for the conversation state store."""

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from models import Conversation, Message, TurnState

from conftest import inbound


ORG = "org-1"
LEAD = "+5511999999999"


class TestConversations:

    def test_first_contact_creates_conversation(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD, "Maria")

        assert conversation.status == "open"
        assert conversation.lead_name == "Maria"
        assert store.resolve_or_create_conversation(ORG, LEAD).id == conversation.id

    def test_concurrent_first_contacts_converge(self, store, db):
        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = set(pool.map(lambda _: store.resolve_or_create_conversation(ORG, LEAD).id, range(16)))

        assert len(ids) == 1

        def count(session):
            return session.query(Conversation).filter(Conversation.lead_identity == LEAD).count()

        assert db.run(count) == 1

    def test_closed_conversation_allows_a_new_one(self, store):
        first = store.resolve_or_create_conversation(ORG, LEAD)
        store.set_status(ORG, first.id, "close")

        second = store.resolve_or_create_conversation(ORG, LEAD)

        assert second.id != first.id
        assert store.get_conversation(ORG, first.id).status == "closed"

    def test_transferred_conversation_stays_the_open_one(self, store):
        first = store.resolve_or_create_conversation(ORG, LEAD)
        assert store.mark_transferred(ORG, first.id, summary="quer falar com humano")

        assert store.resolve_or_create_conversation(ORG, LEAD).id == first.id

    def test_same_identity_in_other_org_is_separate(self, store):
        a = store.resolve_or_create_conversation("org-a", LEAD)
        b = store.resolve_or_create_conversation("org-b", LEAD)
        assert a.id != b.id
        assert store.get_conversation("org-a", b.id) is None

    def test_mark_transferred_only_once(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)

        assert store.mark_transferred(ORG, conversation.id, summary="resumo") is True
        assert store.mark_transferred(ORG, conversation.id, summary="resumo") is False

        reloaded = store.get_conversation(ORG, conversation.id)
        assert reloaded.status == "transferred"
        assert reloaded.summary == "resumo"
        assert reloaded.transferred_at is not None


class TestOperatorActions:

    def test_take_over_and_return(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)

        assert store.set_status(ORG, conversation.id, "take_over", "Carla").status == "transferred"
        assert store.set_status(ORG, conversation.id, "return_to_ai", "Carla").status == "open"

        notes = [m.content for m in store.get_history(conversation.id, 10)]
        assert notes == ["Carla assumiu a conversa", "Carla devolveu a conversa para o agente"]

    def test_closed_conversation_rejects_actions(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)
        store.set_status(ORG, conversation.id, "close")

        with pytest.raises(ValueError):
            store.set_status(ORG, conversation.id, "return_to_ai")

    def test_unknown_action(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)
        with pytest.raises(ValueError):
            store.set_status(ORG, conversation.id, "archive")

    def test_missing_conversation(self, store):
        assert store.set_status(ORG, "does-not-exist", "close") is None

    def test_close_idle(self, store):
        stale = store.resolve_or_create_conversation(ORG, "+5511000000001")
        fresh = store.resolve_or_create_conversation(ORG, "+5511000000002")
        store.update_conversation(ORG, stale.id, last_activity_at=datetime.now(timezone.utc) - timedelta(days=10))

        closed = store.close_idle(datetime.now(timezone.utc) - timedelta(days=7))

        assert closed == 1
        assert store.get_conversation(ORG, stale.id).status == "closed"
        assert store.get_conversation(ORG, fresh.id).status == "open"


class TestInboundAndTurns:

    def test_record_inbound_is_keyed_by_provider_id(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)

        first, created = store.record_inbound(conversation, inbound())
        again, created_again = store.record_inbound(conversation, inbound())

        assert created is True
        assert created_again is False
        assert again.id == first.id
        assert first.turn_id == first.id
        assert first.turn_state == TurnState.RECEIVED.value
        assert store.count_inbound(conversation.id) == 1

    def test_claim_turn_once(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)
        message, _ = store.record_inbound(conversation, inbound())

        assert store.claim_turn(message.id, lease_seconds=120) is True
        assert store.claim_turn(message.id, lease_seconds=120) is False

    def test_concurrent_claims_have_one_winner(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)
        message, _ = store.record_inbound(conversation, inbound())

        with ThreadPoolExecutor(max_workers=8) as pool:
            wins = list(pool.map(lambda _: store.claim_turn(message.id, 120), range(8)))

        assert wins.count(True) == 1

    def test_expired_lease_can_be_reclaimed(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)
        message, _ = store.record_inbound(conversation, inbound())
        store.claim_turn(message.id, lease_seconds=1)

        time.sleep(1.2)

        assert store.claim_turn(message.id, lease_seconds=1) is True

    def test_release_turn_allows_reprocessing(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)
        message, _ = store.record_inbound(conversation, inbound())
        store.claim_turn(message.id, 120)

        assert store.release_turn(message.id) is True
        assert store.is_turn_settled(store.find_inbound(ORG, "wamid.ABC"), 120) is False
        assert store.claim_turn(message.id, 120) is True

    def test_commit_turn_appends_in_order_and_finalizes(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)
        message, _ = store.record_inbound(conversation, inbound())
        store.claim_turn(message.id, 120)

        committed = store.commit_turn(conversation.id, message.id, [
            {"direction": "tool", "content": "qualify_lead: ok", "tool_name": "qualify_lead",
             "tool_arguments": {"collected_data": {"especialidade": "cardiologia"}}},
            {"direction": "outbound", "content": "Qual é o seu nome?", "delivery_status": "sent"},
        ])

        assert committed is True
        history = store.get_history(conversation.id, 10)
        assert [m.direction for m in history] == ["inbound", "tool", "outbound"]
        assert all(m.turn_id == message.id for m in history)

        settled = store.find_inbound(ORG, "wamid.ABC")
        assert settled.turn_state == TurnState.COMPLETED.value
        assert store.is_turn_settled(settled, 120) is True

    def test_commit_turn_twice_writes_once(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)
        message, _ = store.record_inbound(conversation, inbound())
        store.claim_turn(message.id, 120)
        reply = [{"direction": "outbound", "content": "Olá!"}]

        assert store.commit_turn(conversation.id, message.id, reply) is True
        assert store.commit_turn(conversation.id, message.id, reply) is False
        assert len(store.get_history(conversation.id, 10, directions=["outbound"])) == 1

    def test_commit_turn_applies_conversation_updates(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)
        message, _ = store.record_inbound(conversation, inbound())
        store.claim_turn(message.id, 120)

        store.commit_turn(conversation.id, message.id, [], TurnState.FAILED, updates={"summary": "sem cota"})

        assert store.get_conversation(ORG, conversation.id).summary == "sem cota"
        assert store.find_inbound(ORG, "wamid.ABC").turn_state == TurnState.FAILED.value


class TestHistory:

    def test_history_is_oldest_first_and_bounded(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)
        for i in range(6):
            store.append_message(conversation.id, {"direction": "inbound" if i % 2 == 0 else "outbound",
                                                   "content": f"m{i}"})

        history = store.get_history(conversation.id, 4)

        assert [m.content for m in history] == ["m2", "m3", "m4", "m5"]

    def test_same_timestamp_keeps_insertion_order(self, store, db):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)
        stamp = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

        def operation(session):
            for i in range(5):
                session.add(Message(conversation_id=conversation.id, organization_id=ORG,
                                    direction="outbound", content=f"same-{i}", created_at=stamp))

        db.run(operation)

        assert [m.content for m in store.get_history(conversation.id, 10)] == [f"same-{i}" for i in range(5)]

    def test_direction_filter(self, store):
        conversation = store.resolve_or_create_conversation(ORG, LEAD)
        store.append_message(conversation.id, {"direction": "inbound", "content": "oi"})
        store.append_message(conversation.id, {"direction": "tool", "content": "create_contact: ok"})
        store.append_message(conversation.id, {"direction": "outbound", "content": "olá"})

        history = store.get_history(conversation.id, 10, directions=["inbound", "outbound"])

        assert [m.content for m in history] == ["oi", "olá"]
