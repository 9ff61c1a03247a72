"""Exception hierarchy for the loan repayment service."""


class NgnaSoroError(Exception):
    """Base exception for all service errors."""


class InvalidLoanTermsError(NgnaSoroError):
    """Raised when principal, rate or duration cannot produce a schedule."""


class DuplicateScheduleError(NgnaSoroError):
    """Raised when a repayment schedule already exists for a loan."""


class InstallmentNotFoundError(NgnaSoroError):
    """Raised when a referenced installment does not exist."""


class AlreadyPaidError(NgnaSoroError):
    """Raised when recording a payment against a paid installment."""


class InvalidPaymentError(NgnaSoroError):
    """Raised when a payment amount or date is unusable."""


class LoanNotFoundError(NgnaSoroError):
    """Raised when a referenced loan does not exist."""


class InvalidLoanStateError(NgnaSoroError):
    """Raised when a loan status transition is not allowed."""


class NotificationDeliveryError(NgnaSoroError):
    """Raised when a notification cannot be written."""


class ConfigurationError(NgnaSoroError):
    """Raised when configuration is invalid."""
