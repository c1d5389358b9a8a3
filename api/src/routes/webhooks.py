"""
GitHub webhook endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, Optional
import logging

from api.src.config import get_settings
from api.src.db.database import get_db
from api.src.routes.deps import get_pipeline_definition
from api.src.services.github import verify_signature, parse_webhook_payload
from api.src.services.runs import create_pipeline_run
from api.src.services.trigger import event_from_push, resolve_trigger

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

async def process_push_event(
    payload: dict,
    db: AsyncSession,
    definition: Dict[str, Any],
):
    """Resolve a GitHub push event and create a pipeline run if admitted."""
    webhook_data = parse_webhook_payload(payload)

    if (
        settings.repository_full_name
        and webhook_data["repo_full_name"] != settings.repository_full_name
    ):
        logger.info(f"Ignoring push for unconfigured repository {webhook_data['repo_full_name']}")
        return {"status": "skipped", "reason": "Repository not configured"}

    event = event_from_push(webhook_data)
    if not resolve_trigger(event, definition["trigger"]):
        logger.debug(f"Push to {webhook_data['ref']} does not trigger a run")
        return {"status": "skipped", "reason": f"Ref {webhook_data['ref']} not configured"}

    repo_info = {
        "repository": webhook_data["repo_full_name"],
        "clone_url": webhook_data["clone_url"],
        "ref": event.branch,
        "commit_sha": webhook_data["commit_sha"],
    }

    return await create_pipeline_run(
        db,
        event=event,
        config=definition,
        repo_info=repo_info,
        triggered_by=webhook_data["pusher"],
    )

@router.post("/github")
async def github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    definition: Dict[str, Any] = Depends(get_pipeline_definition),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events.
    """
    # Get raw body for signature verification
    body = await request.body()

    if settings.github_webhook_secret:
        if not x_hub_signature_256 or not verify_signature(body, x_hub_signature_256):
            raise HTTPException(status_code=401, detail="Invalid signature")

    # Parse JSON payload
    try:
        payload = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    # Handle different event types
    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    if x_github_event == "push":
        result = await process_push_event(payload, db, definition)
        return result

    # Ignore other events
    return {
        "status": "ignored",
        "event": x_github_event,
        "message": f"Event type '{x_github_event}' not handled"
    }
