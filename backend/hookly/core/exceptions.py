class HooklyError(Exception):
    """Base exception for the Hookly billing service."""

    pass


class WebhookAuthenticationError(HooklyError):
    """Raised when a webhook signature is missing, malformed or wrong."""

    pass


class MalformedPayloadError(HooklyError):
    """Raised when a webhook body lacks the fields processing depends on."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class UserNotFoundError(HooklyError):
    """Raised when no account matches the user id or email on an event."""

    def __init__(self, user_id: str | None, email: str | None):
        self.user_id = user_id
        self.email = email
        super().__init__(f"No account for user_id={user_id!r} email={email!r}")


class PaymentProviderError(HooklyError):
    """Raised when the payment provider API returns an error."""

    pass

