"""Error taxonomy for metering and billing.

Every error carries a machine-readable ``code`` and the HTTP status the
routing layer should answer with. Limit errors are expected and frequent;
they are not system failures and must not be logged as such.
"""


class MeteringError(Exception):
    code = "METERING_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message())

    def default_message(self) -> str:
        return self.code.replace("_", " ").capitalize()

    @property
    def message(self) -> str:
        return str(self)


# --- Validation ---

class ValidationError(MeteringError):
    code = "INVALID_REPORT"
    status_code = 400


class UnknownModelError(ValidationError):
    code = "UNKNOWN_MODEL"

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Unknown model: {model}")


class RequestTooLarge(ValidationError):
    code = "REQUEST_TOO_LARGE"

    def __init__(self, requested: int, limit: int):
        self.requested = requested
        self.limit = limit
        super().__init__(f"Request too large ({requested:,}/{limit:,} tokens)")


# --- Limits ---

class LimitExceeded(MeteringError):
    status_code = 429
    scope = "usage"

    def __init__(self, used: int, limit: int, requested: int):
        self.used = used
        self.limit = limit
        self.requested = requested
        super().__init__(
            f"{self.scope.capitalize()} limit exceeded. Used: {used:,}, Limit: {limit:,}, Requested: {requested:,}"
        )


class DailyLimitExceeded(LimitExceeded):
    code = "DAILY_LIMIT_EXCEEDED"
    scope = "daily"


class MonthlyLimitExceeded(LimitExceeded):
    code = "MONTHLY_LIMIT_EXCEEDED"
    scope = "monthly"


class RequestLimitExceeded(LimitExceeded):
    code = "REQUEST_LIMIT_EXCEEDED"

    def __init__(self, request_type: str, used: int, limit: int, requested: int):
        self.request_type = request_type
        self.scope = f"daily {request_type} request"
        super().__init__(used, limit, requested)


# --- Ordering ---

class DuplicateOrOutOfOrderReport(MeteringError):
    code = "DUPLICATE_REPORT"
    status_code = 400

    def __init__(self, timestamp: str, last_reported_at: str):
        self.timestamp = timestamp
        self.last_reported_at = last_reported_at
        super().__init__(
            f"Timestamp must be newer than last reported ({timestamp} <= {last_reported_at})"
        )


# --- Plan state ---

class UserNotFound(MeteringError):
    code = "USER_NOT_FOUND"
    status_code = 404

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class AlreadyPremium(MeteringError):
    code = "ALREADY_PREMIUM"
    status_code = 409

    def default_message(self) -> str:
        return "User already premium"


class NotPremium(MeteringError):
    code = "NOT_PREMIUM"
    status_code = 409

    def default_message(self) -> str:
        return "User not on premium plan"


class NoActiveSubscription(MeteringError):
    code = "NO_ACTIVE_SUBSCRIPTION"
    status_code = 409

    def default_message(self) -> str:
        return "No active subscription"


class NoPaymentCustomer(MeteringError):
    code = "NO_PAYMENT_CUSTOMER"
    status_code = 409

    def default_message(self) -> str:
        return "No payment customer on file"


class InvoiceNotFound(MeteringError):
    code = "INVOICE_NOT_FOUND"
    status_code = 404

    def __init__(self, user_id: str, month: str | None = None):
        self.user_id = user_id
        self.month = month
        super().__init__(f"No invoice for {user_id}" + (f" in {month}" if month else ""))


# --- Collaborators ---

class PaymentProcessorError(MeteringError):
    code = "PAYMENT_PROCESSOR_ERROR"
    status_code = 502


class ConcurrentModification(MeteringError):
    code = "CONCURRENT_MODIFICATION"
    status_code = 409

    def default_message(self) -> str:
        return "Record was modified concurrently, retry budget exhausted"
