"""
Notifications API — send push notifications and browse their history.

POST   /api/v1/notifications/send     — Notify an audience now or later (admin)
POST   /api/v1/notifications/process  — QStash webhook for scheduled sends
GET    /api/v1/notifications          — Latest 100 notification records (admin)
GET    /api/v1/notifications/{id}     — One notification record (admin)
DELETE /api/v1/notifications/{id}     — Delete a notification record (admin)
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Header, Request, status

from app.core.dependencies import get_notification_sender
from app.core.exceptions import NotFoundError
from app.core.security import require_admin
from app.models.notifications import (
    NotificationListResponse,
    NotificationRecord,
    ScheduledProcessRequest,
    ScheduledProcessResponse,
    SendNotificationRequest,
    SendNotificationResponse,
)
from app.services.notification_sender import NotificationSender
from app.services.qstash import verify_qstash_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])

HISTORY_LIMIT = 100


# ===================================================================
# POST /api/v1/notifications/send
# ===================================================================

@router.post(
    "/send",
    status_code=status.HTTP_200_OK,
    response_model=SendNotificationResponse,
    dependencies=[Depends(require_admin)],
)
async def send_notification(
    payload: SendNotificationRequest,
    sender: NotificationSender = Depends(get_notification_sender),
) -> SendNotificationResponse:
    """
    Send a push notification to every active device of an audience.

    The audience is a targeting rule: all eligible workers, workers
    whose city/category is in a set, or an explicit list of worker ids.
    With a future `scheduled_at` the notification is queued instead.

    Returns:
        200: Delivered (counts may show partial failure) or scheduled.
        401: Missing or invalid admin key.
        422: Missing title/body, or scheduling without QStash.
        503: Push gateway unavailable; the record is marked Failed.
    """
    logger.info(
        "Send requested: target=%s, title=%r",
        payload.target_rule.kind, payload.title[:40],
    )
    record = await sender.send(payload.to_job(), created_by=payload.created_by)
    return SendNotificationResponse(
        id=record.id,
        status=record.status,
        total_recipients=record.total_recipients,
        delivered_count=record.delivered_count,
        sent_at=record.sent_at,
        scheduled_at=record.scheduled_at,
    )


# ===================================================================
# POST /api/v1/notifications/process (QStash webhook)
# ===================================================================

@router.post(
    "/process",
    status_code=status.HTTP_200_OK,
    response_model=ScheduledProcessResponse,
)
async def process_scheduled_notification(
    request: Request,
    upstash_signature: str | None = Header(None, alias="Upstash-Signature"),
    sender: NotificationSender = Depends(get_notification_sender),
) -> ScheduledProcessResponse:
    """
    Deliver a scheduled notification when QStash calls back.

    Returns:
        200: Processed, or skipped because it is no longer Scheduled.
        401: Invalid or missing QStash signature.
        404: Notification not found.
        422: Invalid payload format.
        503: Push gateway unavailable.
    """
    # --- 1. Read raw body for signature verification ---
    body = await request.body()

    # --- 2. Verify QStash signature ---
    try:
        verify_qstash_signature(
            signature=upstash_signature or "",
            body=body,
            url=str(request.url),
        )
    except ValueError as exc:
        logger.warning("QStash signature verification failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid QStash signature: {exc}",
        )

    # --- 3. Parse the payload ---
    try:
        payload = ScheduledProcessRequest(**json.loads(body))
    except (ValueError, TypeError) as exc:
        logger.error("Failed to parse scheduled notification payload: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid notification payload: {exc}",
        )

    # --- 4. Deliver ---
    outcome, record = await sender.process_scheduled(payload.notification_id)
    return ScheduledProcessResponse(
        status=outcome,
        notification_id=record.id,
        delivered_count=record.delivered_count,
        total_recipients=record.total_recipients,
    )


# ===================================================================
# History
# ===================================================================

@router.get(
    "",
    response_model=NotificationListResponse,
    dependencies=[Depends(require_admin)],
)
async def list_notifications(
    sender: NotificationSender = Depends(get_notification_sender),
) -> NotificationListResponse:
    """Latest notification records, newest first."""
    rows = sender.records.list_recent(limit=HISTORY_LIMIT)
    notifications = [NotificationRecord.model_validate(row) for row in rows]
    return NotificationListResponse(notifications=notifications, count=len(notifications))


@router.get(
    "/{notification_id}",
    response_model=NotificationRecord,
    dependencies=[Depends(require_admin)],
)
async def get_notification(
    notification_id: str,
    sender: NotificationSender = Depends(get_notification_sender),
) -> NotificationRecord:
    row = sender.records.get(notification_id)
    if row is None:
        raise NotFoundError("Notification not found.")
    return NotificationRecord.model_validate(row)


@router.delete(
    "/{notification_id}",
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
async def delete_notification(
    notification_id: str,
    sender: NotificationSender = Depends(get_notification_sender),
) -> dict:
    if not sender.records.delete(notification_id):
        raise NotFoundError("Notification not found.")
    logger.info("Deleted notification %s", notification_id[:8])
    return {"ok": True}
