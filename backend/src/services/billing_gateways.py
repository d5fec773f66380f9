"""
Collaborator interfaces consumed by the billing engine.

The engine never reaches into other subsystems directly. Visits, notifications
and audit logging are reached through the small gateways defined here and
injected into the workflows' constructors.

Notification and audit delivery are best effort: failures are logged and
never fail the billing operation that triggered them.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from core.constants import VISIT_STATUS_COMPLETED, VISIT_STATUS_CANCELLED
from models.visit import Visit
from services.billing_errors import VisitNotFoundError
from utils.datetime_utils import clinic_now
from utils.retry import retry_on_transient_failure

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("billing.audit")


@dataclass(frozen=True)
class VisitCompletionResult:
    visit_id: int
    status: str
    changed: bool
    """False when the visit was already completed (no side effect)."""


@dataclass
class AuditEvent:
    action: str
    entity_type: str
    entity_id: Any
    actor_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)


class VisitGateway(Protocol):
    def get_status(self, visit_id: int) -> str: ...

    def get_patient_id(self, visit_id: int) -> Optional[int]: ...

    def complete(self, visit_id: int, meta: Dict[str, Any]) -> VisitCompletionResult: ...


class NotificationGateway(Protocol):
    def notify(self, audience: str, message: Dict[str, Any]) -> None: ...


class AuditGateway(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class SqlVisitGateway:
    """VisitGateway backed by the visits table. Each completion commits on its own."""

    def __init__(self, db: Session):
        self.db = db

    def _load(self, visit_id: int) -> Visit:
        stmt = select(Visit).where(Visit.id == visit_id).execution_options(populate_existing=True)
        visit = self.db.execute(stmt).scalar_one_or_none()
        if visit is None:
            raise VisitNotFoundError("Visit", visit_id)
        return visit

    @retry_on_transient_failure()
    def get_status(self, visit_id: int) -> str:
        try:
            return self._load(visit_id).status
        except DBAPIError:
            self.db.rollback()
            raise

    @retry_on_transient_failure()
    def get_patient_id(self, visit_id: int) -> Optional[int]:
        try:
            return self._load(visit_id).patient_id
        except DBAPIError:
            self.db.rollback()
            raise

    @retry_on_transient_failure()
    def complete(self, visit_id: int, meta: Dict[str, Any]) -> VisitCompletionResult:
        """
        Drive a visit to 'completed'. Idempotent: completing a completed visit is a no-op.

        Raises:
            VisitNotFoundError: unknown visit
            ValueError: the visit was cancelled
        """
        try:
            visit = self._load(visit_id)
            if visit.status == VISIT_STATUS_COMPLETED:
                return VisitCompletionResult(visit_id=visit_id, status=visit.status, changed=False)
            if visit.status == VISIT_STATUS_CANCELLED:
                raise ValueError(f"Visit {visit_id} is cancelled and cannot be completed")

            visit.status = VISIT_STATUS_COMPLETED
            visit.completed_at = clinic_now()
            visit.completed_by = meta.get("completed_by")
            self.db.commit()
        except DBAPIError:
            self.db.rollback()
            raise
        logger.info(f"Visit {visit_id} completed (source: {meta.get('source', 'billing')})")
        return VisitCompletionResult(visit_id=visit_id, status=VISIT_STATUS_COMPLETED, changed=True)


class LoggingNotificationGateway:
    """Writes notifications to the application log. Swap for a real channel in deployment."""

    def notify(self, audience: str, message: Dict[str, Any]) -> None:
        logger.info(f"Notification to {audience}: {message.get('title', '')} - {message.get('message', '')}")


class LoggingAuditGateway:
    """Emits audit events as JSON lines on the 'billing.audit' logger."""

    def record(self, event: AuditEvent) -> None:
        audit_logger.info(json.dumps(asdict(event), default=str, sort_keys=True))


def notify_best_effort(gateway: NotificationGateway, audience: str, message: Dict[str, Any]) -> bool:
    """Send a notification, logging (not raising) on failure. Returns True if sent."""
    try:
        gateway.notify(audience, message)
        return True
    except Exception as e:
        logger.warning(f"Failed to notify {audience} ({message.get('title', 'untitled')}): {e}")
        return False


def audit_best_effort(gateway: AuditGateway, event: AuditEvent) -> bool:
    """Record an audit event, logging (not raising) on failure. Returns True if recorded."""
    try:
        gateway.record(event)
        return True
    except Exception as e:
        logger.warning(f"Failed to record audit event {event.action} for {event.entity_type} {event.entity_id}: {e}")
        return False
