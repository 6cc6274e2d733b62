"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
(see ``cardflow.utils.errors.register_error_handlers``) and get consistent
HTTP status codes everywhere.

Two families live here:

  * Synchronous, caller-facing errors raised by the lifecycle engine and the
    service layer (NotFoundError, ValidationError, InvalidTransition,
    AssignmentLimitExceeded). The transaction is rolled back before they
    reach the caller.
  * Delivery errors (DeliveryFailure, SsrfRejected) raised inside fan-out
    tasks. They are recorded on the WebhookDelivery row and never reach the
    code path that triggered the originating card transition.

Usage:
    from cardflow.core.exceptions import InvalidTransition, NotFoundError

    raise NotFoundError(resource="Card", resource_id=42)
    raise InvalidTransition(card_id=42, action="reopen", state="triaged")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-account access
    attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "Card", "Webhook").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        account_id: Optional. The scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        account_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.account_id = account_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if account_id is not None:
            msg += f" (account={account_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 400 in the blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransition(Exception):
    """Raised when a card lifecycle operation is not legal from its current state.

    Maps to HTTP 409. Raised before any mutation is flushed, and the
    surrounding transaction is rolled back, so no Event is appended.
    """

    def __init__(self, card_id: int, action: str, state: str, reason: str | None = None) -> None:
        msg = f"Cannot '{action}' card {card_id} (state={state})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.card_id = card_id
        self.action = action
        self.state = state
        self.reason = reason


class AssignmentLimitExceeded(Exception):
    """Raised when assigning would exceed the per-card assignee cap.

    Maps to HTTP 422.
    """

    def __init__(self, card_id: int, limit: int) -> None:
        super().__init__(f"Card {card_id} already has the maximum of {limit} assignees")
        self.card_id = card_id
        self.limit = limit


class DeliveryFailure(Exception):
    """An outbound webhook or email send failed.

    Recorded on the delivery row by the dispatcher; never re-raised to the
    transition that produced the event.
    """


class SsrfRejected(DeliveryFailure):
    """The webhook target resolved to a non-public address.

    Raised before any socket to the target is opened.
    """

    def __init__(self, url: str, address: str | None = None) -> None:
        msg = f"Refusing to deliver to {url}"
        if address:
            msg += f": resolves to non-public address {address}"
        super().__init__(msg)
        self.url = url
        self.address = address
