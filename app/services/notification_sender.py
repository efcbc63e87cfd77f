"""
Notification Sender — "notify audience X with payload P", end to end.

Flow for one job:
1. Validate the job (title and body required).
2. Create the NotificationRecord (Draft, or Scheduled for future sends).
3. Resolve the targeting rule into tokens.
4. Dispatch through the delivery engine.
5. Write the final counts and status once: Sent, or Failed when the
   gateway or the store gave out. A Failed record is written before the
   error propagates, so no request disappears without a trace.

Scheduled jobs stop after step 2 and publish a QStash message; the
webhook later calls `process_scheduled`, which runs steps 3-5.
"""

import logging
from datetime import datetime, timezone

import httpx

from app.core.config import WEBHOOK_BASE_URL, is_qstash_configured
from app.core.exceptions import (
    GatewayError,
    NotFoundError,
    PushServiceError,
    ValidationError,
)
from app.db.notification_store import NotificationRecordStore
from app.models.notifications import (
    NotificationJob,
    NotificationPayload,
    NotificationRecord,
    NotificationStatus,
    PushEnvelope,
)
from app.services.audience import AudienceResolver
from app.services.delivery import DeliveryEngine
from app.services.qstash import publish_to_qstash

logger = logging.getLogger(__name__)

PROCESS_PATH = "/api/v1/notifications/process"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class NotificationSender:
    def __init__(
        self,
        records: NotificationRecordStore,
        resolver: AudienceResolver,
        engine: DeliveryEngine,
    ):
        self.records = records
        self.resolver = resolver
        self.engine = engine

    # ---------------------------------------------------------------
    # Entry points
    # ---------------------------------------------------------------

    async def send(
        self, job: NotificationJob, *, created_by: str | None = None,
    ) -> NotificationRecord:
        """
        Send (or schedule) a notification job.

        Returns the final NotificationRecord. Partial per-token failure
        still returns normally with the counts.

        Raises:
            ValidationError: title or body missing, or scheduling
                requested without QStash configured.
            GatewayError: the push transport was unavailable; the
                record is already marked Failed.
        """
        self._validate(job)

        if job.scheduled_at is not None and _as_utc(job.scheduled_at) > _utcnow():
            return await self._schedule(job, created_by)

        record = self._create(job, created_by, NotificationStatus.DRAFT)
        return await self._deliver(record, job)

    async def process_scheduled(self, notification_id: str) -> tuple[str, NotificationRecord]:
        """
        Deliver a scheduled notification when QStash calls back.

        Returns ("processed", record), or ("skipped", record) when the
        record is no longer Scheduled (QStash may redeliver).

        Raises:
            NotFoundError: no such notification.
        """
        row = self.records.get(notification_id)
        if row is None:
            raise NotFoundError(f"Notification {notification_id} not found.")

        record = NotificationRecord.model_validate(row)
        if record.status != NotificationStatus.SCHEDULED:
            logger.info(
                "Notification %s already %s — skipping scheduled delivery",
                notification_id[:8], record.status.value,
            )
            return "skipped", record

        return "processed", await self._deliver(record, record.to_job())

    # ---------------------------------------------------------------
    # Steps
    # ---------------------------------------------------------------

    @staticmethod
    def _validate(job: NotificationJob) -> None:
        missing = [
            name for name, value in (("title", job.title), ("body", job.body))
            if not (value or "").strip()
        ]
        if missing:
            raise ValidationError(f"{' and '.join(missing).capitalize()} required.")

    def _create(
        self,
        job: NotificationJob,
        created_by: str | None,
        status: NotificationStatus,
    ) -> NotificationRecord:
        row = self.records.create({
            "title": job.title.strip(),
            "message": job.body.strip(),
            "type": job.type.value,
            "target_rule": job.target.model_dump(),
            "data": job.data,
            "image_url": job.image_url,
            "status": status.value,
            "scheduled_at": _as_utc(job.scheduled_at).isoformat() if job.scheduled_at else None,
            "total_recipients": 0,
            "delivered_count": 0,
            "created_by": created_by,
        })
        record = NotificationRecord.model_validate(row)
        logger.info(
            "Created notification %s (%s, target=%s)",
            record.id[:8], status.value, job.target.kind,
        )
        return record

    async def _schedule(
        self, job: NotificationJob, created_by: str | None,
    ) -> NotificationRecord:
        if not is_qstash_configured():
            raise ValidationError(
                "Scheduled notifications require QStash to be configured."
            )

        record = self._create(job, created_by, NotificationStatus.SCHEDULED)
        try:
            await publish_to_qstash(
                destination_url=f"{WEBHOOK_BASE_URL}{PROCESS_PATH}",
                body={"notification_id": record.id},
                not_before=int(_as_utc(job.scheduled_at).timestamp()),
                deduplication_id=f"notification-{record.id}",
            )
        except (RuntimeError, httpx.HTTPError) as exc:
            self._finalize(record, NotificationStatus.FAILED, error=f"Scheduling failed: {exc}")
            raise GatewayError(
                f"Could not schedule notification: {exc}", notification_id=record.id,
            ) from exc

        logger.info(
            "Scheduled notification %s for %s",
            record.id[:8], _as_utc(job.scheduled_at).isoformat(),
        )
        return record

    async def _deliver(
        self, record: NotificationRecord, job: NotificationJob,
    ) -> NotificationRecord:
        try:
            members = self.resolver.resolve(job.target)
        except PushServiceError as exc:
            self._finalize(record, NotificationStatus.FAILED, error=exc.message)
            raise

        tokens = sorted(member.token for member in members)
        payload = NotificationPayload(
            envelope=PushEnvelope(
                title=job.title.strip(),
                body=job.body.strip(),
                image_url=job.image_url,
            ),
            data={**job.data, "notification_id": record.id},
        )

        try:
            result = await self.engine.dispatch(payload, tokens)
        except GatewayError as exc:
            self._finalize(
                record,
                NotificationStatus.FAILED,
                total=len(tokens),
                error=exc.message,
            )
            exc.notification_id = record.id
            raise

        final = self._finalize(
            record,
            NotificationStatus.SENT,
            total=len(tokens),
            delivered=result.success_count,
        )
        logger.info(
            "Notification %s sent to %d/%d device(s)",
            record.id[:8], final.delivered_count, final.total_recipients,
        )
        return final

    def _finalize(
        self,
        record: NotificationRecord,
        status: NotificationStatus,
        *,
        total: int = 0,
        delivered: int = 0,
        error: str | None = None,
    ) -> NotificationRecord:
        changes = {
            "status": status.value,
            "total_recipients": total,
            "delivered_count": min(delivered, total),
            "error": error,
        }
        if status == NotificationStatus.SENT:
            changes["sent_at"] = _utcnow().isoformat()

        row = self.records.finalize(record.id, changes)
        if row is None:
            logger.warning(
                "Notification %s was already finalized; keeping its stored status",
                record.id[:8],
            )
            current = self.records.get(record.id)
            return NotificationRecord.model_validate(current) if current else record
        return NotificationRecord.model_validate(row)
