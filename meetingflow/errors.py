"""
Error kinds raised by the scheduling engine.

Only NotFound, InvalidTransition, DraftConflict and InvalidRequest are meant
to reach API callers. The remaining kinds are raised inside a component and
recovered by its caller (fallback slots, channel fallback, failed state).
"""


class SchedulerError(Exception):
    """Base class for all scheduling engine errors."""


class NotFound(SchedulerError):
    """Unknown request, draft, webhook or delivery id."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidTransition(SchedulerError):
    """The state machine rejected an out-of-order or terminal-state mutation."""

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message)


class InvalidRequest(SchedulerError):
    """Malformed or incomplete input (e.g. a request without attendees)."""


class DraftConflict(SchedulerError):
    """A live draft already exists; regenerate it instead."""


class ChannelUnavailable(SchedulerError):
    """
    No send channel delivered the message.

    retryable is set when at least one channel failed for a transient
    reason (timeout, unreachable provider, 5xx) and may work later.
    """

    def __init__(self, request_id: str, errors: dict[str, str], retryable: bool = False):
        self.request_id = request_id
        self.errors = errors
        self.retryable = retryable
        detail = ", ".join(f"{channel}: {error}" for channel, error in errors.items())
        super().__init__(f"No working channel for request {request_id} ({detail})")


class DeliveryExhausted(SchedulerError):
    """Webhook retries exhausted for a delivery."""

    def __init__(self, delivery_id: str, attempts: int, last_error: str | None):
        self.delivery_id = delivery_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Delivery {delivery_id} failed after {attempts} attempts: {last_error}")


class ProviderTimeout(SchedulerError):
    """A calendar, email or SMS provider did not answer in time."""

    def __init__(self, provider: str, timeout: float):
        self.provider = provider
        self.timeout = timeout
        super().__init__(f"{provider} did not respond within {timeout}s")


class CorrelationFailure(SchedulerError):
    """An inbound reply could not be matched to a live scheduling request."""

    def __init__(self, provider: str, conversation_id: str, message_id: str):
        self.provider = provider
        self.conversation_id = conversation_id
        self.message_id = message_id
        super().__init__(
            f"Could not correlate {provider} conversation {conversation_id} "
            f"(message {message_id}) to a scheduling request"
        )
