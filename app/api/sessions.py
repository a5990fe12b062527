"""
Session API Endpoints
Operator view of the live WhatsApp sessions
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.middleware.webhook_auth import get_webhook_secret
from app.models.session import SessionSnapshot
from app.models.webhook import SessionListResponse, SessionRestartResponse
from app.services.session_registry import get_session_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get(
    "",
    response_model=SessionListResponse,
    summary="List WhatsApp sessions",
)
async def list_sessions(secret: str = Depends(get_webhook_secret)):
    snapshots = get_session_registry().snapshots()
    return SessionListResponse(sessions=snapshots, total=len(snapshots))


@router.get(
    "/{account_id}",
    response_model=SessionSnapshot,
    summary="Get WhatsApp session status",
    description="Status, pairing image and last error of one account's session"
)
async def get_session(account_id: str, secret: str = Depends(get_webhook_secret)):
    manager = get_session_registry().get(account_id)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No session for account {account_id}"
        )
    return manager.snapshot()


@router.post(
    "/{account_id}/restart",
    response_model=SessionRestartResponse,
    summary="Restart WhatsApp session",
    description="Destroy the current connection and start a new one (e.g. after an auth failure)"
)
async def restart_session(account_id: str, secret: str = Depends(get_webhook_secret)):
    manager = get_session_registry().get(account_id)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No session for account {account_id}"
        )

    ok = await manager.restart()
    snapshot = manager.snapshot()
    if not ok and snapshot.status.value == "logging_out":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Logout teardown in progress"
        )

    logger.info(f"🔄 Restart requested for account {account_id}: {'ok' if ok else 'failed'}")
    return SessionRestartResponse(
        success=ok,
        account_id=account_id,
        session=snapshot,
        message="Session restarted" if ok else (snapshot.last_error or "Restart failed"),
    )
