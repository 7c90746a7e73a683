"""
API routes: provider webhooks, usage governance and the operator surface.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool
from typing import List, Optional

from api.dependencies import Runtime, get_runtime, require_admin
from models.errors import DuplicateDelivery, InvalidPayload, PersistenceFailure, Unauthorized
from models.schemas import (
    WebhookResponse, HealthResponse, QuotaStatusResponse, UsageStatsResponse,
    ConversationActionRequest, ConversationActionResponse, MessageView
)
from observability import trace_logger
from webhooks import PROVIDERS, verify_subscription


router = APIRouter()


def _check_provider(provider: str) -> None:
    if provider not in PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")


@router.post("/webhook/{provider}", response_model=WebhookResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    org: str = Query(..., min_length=1),
    runtime: Runtime = Depends(get_runtime)
) -> WebhookResponse:
    """
    Webhook endpoint for inbound WhatsApp messages.

    This is the main entry point for the agent. Providers retry on 5xx, so
    only persistence failures answer 503; everything else is acknowledged.
    """
    _check_provider(provider)
    raw_body = await request.body()

    try:
        result = await run_in_threadpool(
            runtime.ingestion.ingest, org, provider, raw_body, dict(request.headers)
        )
    except DuplicateDelivery:
        return WebhookResponse(status="duplicate")
    except InvalidPayload as e:
        trace_logger.warning("Rejected webhook payload", organization_id=org, provider=provider, error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    except Unauthorized as e:
        trace_logger.warning("Rejected webhook signature", organization_id=org, provider=provider, error=str(e))
        raise HTTPException(status_code=401, detail=str(e))
    except PersistenceFailure as e:
        trace_logger.warning("Webhook deferred to provider retry", organization_id=org, provider=provider, error=str(e))
        raise HTTPException(status_code=503, detail="Temporarily unavailable, retry later")

    return WebhookResponse(**result.to_dict())


@router.get("/webhook/{provider}", response_class=PlainTextResponse)
async def verify_webhook(
    provider: str,
    org: str = Query(..., min_length=1),
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    runtime: Runtime = Depends(get_runtime)
) -> PlainTextResponse:
    """Cloud API subscription handshake."""
    _check_provider(provider)
    if hub_mode != "subscribe" or not hub_verify_token or not hub_challenge:
        raise HTTPException(status_code=400, detail="Bad Request")

    agent_config = await run_in_threadpool(runtime.crm.get_agent_config, org)
    challenge = verify_subscription(hub_mode, hub_verify_token, hub_challenge, agent_config)
    if challenge is None:
        raise HTTPException(status_code=403, detail="Forbidden")
    return PlainTextResponse(challenge)


@router.get(
    "/usage/{organization_id}",
    response_model=UsageStatsResponse,
    dependencies=[Depends(require_admin)]
)
def get_usage(
    organization_id: str,
    period: str = Query("month"),
    runtime: Runtime = Depends(get_runtime)
) -> UsageStatsResponse:
    """Aggregated model usage for the governance dashboard."""
    try:
        stats = runtime.ledger.usage_stats(organization_id, period)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid period: {period}")
    except PersistenceFailure:
        raise HTTPException(status_code=503, detail="Temporarily unavailable")
    return UsageStatsResponse(**stats)


@router.get(
    "/usage/{organization_id}/quota",
    response_model=QuotaStatusResponse,
    dependencies=[Depends(require_admin)]
)
def get_quota(
    organization_id: str,
    runtime: Runtime = Depends(get_runtime)
) -> QuotaStatusResponse:
    """Current quota window for an organization."""
    try:
        status = runtime.ledger.quota_status(organization_id)
    except PersistenceFailure:
        raise HTTPException(status_code=503, detail="Temporarily unavailable")
    return QuotaStatusResponse(**status)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=List[MessageView],
    dependencies=[Depends(require_admin)]
)
def list_messages(
    conversation_id: str,
    org: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
    runtime: Runtime = Depends(get_runtime)
) -> List[MessageView]:
    """Conversation transcript, oldest first."""
    conversation = runtime.store.get_conversation(org, conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")

    messages = runtime.store.get_history(conversation_id, limit)
    return [
        MessageView(
            id=m.id,
            direction=m.direction,
            content=m.content,
            tool_name=m.tool_name,
            tool_error=m.tool_error,
            delivery_status=m.delivery_status,
            created_at=m.created_at
        )
        for m in messages
    ]


@router.post(
    "/conversations/{conversation_id}/actions",
    response_model=ConversationActionResponse,
    dependencies=[Depends(require_admin)]
)
def conversation_action(
    conversation_id: str,
    request: ConversationActionRequest,
    runtime: Runtime = Depends(get_runtime)
) -> ConversationActionResponse:
    """Operator take over, return to the agent, or close."""
    try:
        conversation = runtime.store.set_status(
            request.organization_id, conversation_id, request.action, request.operator_name
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")

    return ConversationActionResponse(
        success=True,
        action=request.action,
        new_status=conversation.status
    )


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version="1.0.0"
    )
