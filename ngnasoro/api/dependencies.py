"""
Service wiring and FastAPI dependencies
"""

from datetime import date
from typing import Optional

from ..storage import StorageInterface, create_storage
from ..audit import AuditTrail
from ..currency import Currency
from ..schedules import PaymentScheduleStore
from ..loans import LoanManager
from ..notifications import build_notification_center
from ..reminders import ReminderScanner, ReminderSweepResult
from ..scheduler import DailyScheduler
from ..config import NgnaSoroConfig, get_config
from ..exceptions import ConfigurationError


class MicrofinanceSystem:
    """Loan repayment service with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 settings: Optional[NgnaSoroConfig] = None):
        self.settings = settings or get_config()

        try:
            self.currency = Currency[self.settings.currency]
        except KeyError:
            raise ConfigurationError(f"Unsupported currency: {self.settings.currency}")

        self.storage = storage or create_storage(
            self.settings.storage_backend, self.settings.sqlite_path
        )

        self.audit_trail = AuditTrail(self.storage)
        self.notifications = build_notification_center(
            self.storage,
            sms_enabled=self.settings.sms_enabled,
            email_enabled=self.settings.email_enabled,
            webhook_url=self.settings.notification_webhook_url,
            webhook_timeout=self.settings.notification_webhook_timeout
        )
        self.schedule_store = PaymentScheduleStore(
            self.storage,
            self.audit_trail,
            late_fee_grace_days=self.settings.late_fee_grace_days,
            late_fee_rate=self.settings.late_fee_rate
        )
        self.loan_manager = LoanManager(
            self.storage, self.schedule_store, self.audit_trail,
            self.notifications, self.currency
        )
        self.reminder_scanner = ReminderScanner(
            self.schedule_store,
            self.loan_manager,
            self.notifications,
            self.audit_trail,
            self.storage,
            lead_days=self.settings.reminder_lead_days,
            dedupe_enabled=self.settings.reminder_dedupe_enabled
        )
        self.scheduler = DailyScheduler(self.run_reminders, self.settings.reminder_cron)

    def run_reminders(self, today: Optional[date] = None) -> ReminderSweepResult:
        return self.reminder_scanner.run(today)

    def close(self) -> None:
        self.scheduler.stop()
        self.storage.close()


# Global service instance, built on first use
microfinance_system: Optional[MicrofinanceSystem] = None


def get_system() -> MicrofinanceSystem:
    global microfinance_system
    if microfinance_system is None:
        microfinance_system = MicrofinanceSystem()
    return microfinance_system
