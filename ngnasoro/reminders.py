"""
Payment Reminder Module

Daily sweep that flags overdue installments and reminds clients of upcoming
ones 7, 3 and 1 days ahead of the due date.

Each reminder is claimed in the ``reminder_dispatches`` table under
``"{sweep date}:{lead days}:{installment id}"`` before the notification is
written, so re-running the sweep on the same day sends nothing twice. The
claim is released when the notification write fails, which keeps delivery
at-least-once.
"""

from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging

from .storage import StorageInterface
from .audit import AuditTrail, AuditAction, AuditCategory
from .schedules import PaymentScheduleStore, Installment
from .loans import LoanManager, LoanStatus
from .notifications import NotificationSink, NotificationUrgency, NotificationType
from .exceptions import LoanNotFoundError
from .logging_config import correlation_context, get_correlation_id

logger = logging.getLogger("ngnasoro.reminders")

DEFAULT_LEAD_DAYS = (7, 3, 1)


def urgency_for_lead(lead_days: int) -> NotificationUrgency:
    """7 days ahead is informational, 3 is a warning, 1 is urgent"""
    if lead_days <= 1:
        return NotificationUrgency.URGENT
    if lead_days <= 3:
        return NotificationUrgency.WARN
    return NotificationUrgency.INFO


@dataclass
class ReminderSweepResult:
    """Outcome of one reminder sweep"""
    run_date: date
    notifications_created: int = 0
    failed: int = 0
    skipped: int = 0
    late_installments: int = 0
    success: bool = True
    details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "runDate": self.run_date.isoformat(),
            "notificationsCreated": self.notifications_created,
            "failed": self.failed,
            "skipped": self.skipped,
            "lateInstallments": self.late_installments,
            "details": self.details
        }


class ReminderScanner:
    """
    Finds installments falling due soon and notifies their borrowers
    """

    def __init__(
        self,
        schedule_store: PaymentScheduleStore,
        loan_manager: LoanManager,
        notifications: NotificationSink,
        audit_trail: AuditTrail,
        storage: StorageInterface,
        lead_days: Sequence[int] = DEFAULT_LEAD_DAYS,
        dedupe_enabled: bool = True
    ):
        self.schedule_store = schedule_store
        self.loan_manager = loan_manager
        self.notifications = notifications
        self.audit_trail = audit_trail
        self.storage = storage
        self.lead_days = list(lead_days)
        self.dedupe_enabled = dedupe_enabled

        self.dispatches_table = "reminder_dispatches"

    def run(self, today: Optional[date] = None) -> ReminderSweepResult:
        """
        Run one sweep

        A failure on a single installment is logged and counted; the sweep
        carries on with the rest.

        Args:
            today: Sweep date (defaults to the current date)

        Returns:
            ReminderSweepResult with counts and per-installment details
        """
        if today is None:
            today = date.today()

        # Scheduled runs have no request id of their own
        with correlation_context(get_correlation_id() or f"sweep-{today.isoformat()}"):
            return self._sweep(today)

    def _sweep(self, today: date) -> ReminderSweepResult:
        result = ReminderSweepResult(run_date=today)
        logger.info("Starting reminder sweep for %s", today.isoformat())

        try:
            result.late_installments = len(self.schedule_store.mark_late_installments(today))
        except Exception:
            logger.exception("Marking late installments failed for %s", today.isoformat())
            result.success = False

        for lead in self.lead_days:
            target = today + timedelta(days=lead)
            for installment in self.schedule_store.get_due_installments(target):
                try:
                    self._remind(installment, lead, today, result)
                except Exception as e:
                    logger.exception(
                        "Reminder for installment %s (%d days ahead) failed",
                        installment.id, lead
                    )
                    result.failed += 1
                    result.details.append({
                        "installment_id": installment.id,
                        "loan_id": installment.loan_id,
                        "lead_days": lead,
                        "status": "failed",
                        "error": str(e)
                    })

        if result.failed and not (result.notifications_created or result.skipped):
            result.success = False

        self.audit_trail.log_event(
            action=AuditAction.REMINDER_SWEEP_COMPLETED,
            category=AuditCategory.SYSTEM,
            target_resource=f"reminders:{today.isoformat()}",
            details={
                "notifications_created": result.notifications_created,
                "failed": result.failed,
                "skipped": result.skipped,
                "late_installments": result.late_installments,
                "success": result.success,
                "correlation_id": get_correlation_id()
            }
        )
        logger.info(
            "Reminder sweep for %s done: %d sent, %d failed, %d skipped",
            today.isoformat(), result.notifications_created, result.failed, result.skipped
        )
        return result

    def _remind(self, installment: Installment, lead: int, today: date,
                result: ReminderSweepResult) -> None:
        loan = self.loan_manager.get_loan(installment.loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {installment.loan_id} not found")

        if loan.status != LoanStatus.ACTIVE:
            result.skipped += 1
            result.details.append(self._detail(installment, lead, "skipped", reason=loan.status.value))
            return

        dispatch_key = f"{today.isoformat()}:{lead}:{installment.id}"
        if self.dedupe_enabled and not self._claim(dispatch_key, installment, lead):
            result.skipped += 1
            result.details.append(self._detail(installment, lead, "duplicate"))
            return

        due = installment.due_date.strftime("%d/%m/%Y")
        amount = installment.amount_due.to_string()
        payload = {
            "user_id": loan.client_id,
            "type": NotificationType.LOAN_PAYMENT_REMINDER.value,
            "title": "Paiement dû demain" if lead <= 1 else "Rappel de paiement",
            "message": (
                f"Votre paiement de {amount} pour le prêt #{loan.reference} "
                f"(échéance n°{installment.installment_number}) est dû le {due}. "
                f"Veuillez préparer votre paiement."
            ),
            "action_url": f"/loans/{loan.id}"
        }

        try:
            notification = self.notifications.write(payload, urgency_for_lead(lead))
        except Exception:
            if self.dedupe_enabled:
                self.storage.delete(self.dispatches_table, dispatch_key)
            raise

        if self.dedupe_enabled:
            self.storage.update_where(
                self.dispatches_table, dispatch_key, {}, {"notification_id": notification.id}
            )

        if lead == 1:
            self.audit_trail.log_event(
                action=AuditAction.PAYMENT_REMINDER_SENT,
                category=AuditCategory.NOTIFICATIONS,
                target_resource=loan.id,
                user_id=loan.client_id,
                details={
                    "installment_id": installment.id,
                    "installment_number": installment.installment_number,
                    "due_date": installment.due_date,
                    "amount": amount,
                    "notification_id": notification.id
                }
            )

        result.notifications_created += 1
        result.details.append(self._detail(
            installment, lead, "sent", notification_id=notification.id, user_id=loan.client_id
        ))

    def _claim(self, dispatch_key: str, installment: Installment, lead: int) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        return self.storage.insert_if_absent(self.dispatches_table, dispatch_key, {
            "id": dispatch_key,
            "created_at": now,
            "updated_at": now,
            "installment_id": installment.id,
            "loan_id": installment.loan_id,
            "lead_days": lead,
            "notification_id": None
        })

    @staticmethod
    def _detail(installment: Installment, lead: int, status: str, **extra) -> Dict[str, Any]:
        detail = {
            "installment_id": installment.id,
            "loan_id": installment.loan_id,
            "installment_number": installment.installment_number,
            "due_date": installment.due_date.isoformat(),
            "lead_days": lead,
            "status": status
        }
        detail.update(extra)
        return detail
