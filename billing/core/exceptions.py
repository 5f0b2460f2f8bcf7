import traceback


class BillingError(Exception):
    def __init__(self, message: str, status_code: int = 400, stack_trace: bool = False):
        self.message = message
        self.status_code = status_code
        self.stack_trace = traceback.format_exc() if stack_trace else None
        super().__init__(self.message)


class InvalidTrigger(BillingError):
    """Trigger is missing identity fields or carries a malformed payload. Nothing was written."""

    def __init__(self, message: str = "Invalid trigger"):
        super().__init__(message, status_code=422)


class LedgerUnavailable(BillingError):
    """The ledger store failed on insert, read or update."""

    def __init__(self, message: str = "Ledger unavailable"):
        super().__init__(message, status_code=503, stack_trace=True)


class EffectFailed(BillingError):
    """The business mutation or the notification failed. The unit of work stays retryable."""

    def __init__(self, message: str = "Effect failed", cause: Exception | None = None):
        self.cause = cause
        super().__init__(message, status_code=500)


class WorkInProgress(BillingError):
    def __init__(self, message: str = "Another attempt is already in progress"):
        super().__init__(message, status_code=409)


class InvalidSignature(BillingError):
    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message, status_code=401)


class ReportNotFound(BillingError):
    def __init__(self):
        super().__init__("Report not found", status_code=404)


class ReportNotReady(BillingError):
    def __init__(self):
        super().__init__("Report not ready", status_code=409)


class NotificationError(BillingError):
    """Raised by the email dispatcher. The report guard turns it into EffectFailed."""

    def __init__(self, message: str = "Failed to send notification"):
        super().__init__(message, status_code=502)
