class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    pass


class InsufficientBalanceError(ValidationError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class AffiliateNotFoundError(NotFoundError):
    pass


class ReferralNotFoundError(NotFoundError):
    pass


class WithdrawalNotFoundError(NotFoundError):
    pass


class InvalidTransitionError(LedgerServiceError):
    pass


class TransientStorageError(LedgerServiceError):
    """Storage timed out or lost a race too many times; safe to retry."""


class ConcurrentUpdateError(LedgerServiceError):
    """A compare-and-set matched no row. Retried inside run_in_transaction."""


class NotificationError(LedgerServiceError):
    pass
