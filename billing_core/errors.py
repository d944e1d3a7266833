"""Exception taxonomy for the billing core.

Quota and budget rejections are not errors; they are returned as results
carrying a code (see services.usage_meter and services.cost_breaker).
"""


class BillingError(Exception):
    """Base class for all billing core errors."""


class ConfigurationError(BillingError):
    """Required configuration is missing or inconsistent. Fatal at startup."""


class WebhookPayloadError(BillingError):
    """A webhook body could not be parsed into a known event shape."""


class WebhookProcessingError(BillingError):
    """An event could not be applied. The transaction is rolled back and the
    provider is asked to retry."""


class MissingAccountReferenceError(WebhookProcessingError):
    """No caller id could be resolved for an event that needs one."""


class AccountNotFoundError(BillingError):
    """No account exists for the given caller id."""


class SubscriptionNotFoundError(BillingError):
    """No subscription is recorded (yet) for the given external id."""


class ActiveSubscriptionConflictError(WebhookProcessingError):
    """The account already has a different active subscription."""


class ProviderError(BillingError):
    """The billing provider could not be reached or returned an error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
