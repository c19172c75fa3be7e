from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.application.services.inbound_event_service import ingest_webhook
from app.infrastructure.db.session import get_db

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}", status_code=status.HTTP_200_OK)
async def receive_webhook(provider: str, request: Request, db: Session = Depends(get_db)) -> dict:
    """Acknowledge once the delivery is durably recorded; processing continues in the workers."""
    body = await request.body()
    # The ledger write is blocking database I/O and must not hold the event loop.
    result = await run_in_threadpool(
        ingest_webhook,
        db,
        provider=provider,
        headers=dict(request.headers),
        body=body,
    )
    return {
        "received": True,
        "event_id": str(result.event_id),
        "duplicate": not result.is_new,
        "status": result.status,
    }
