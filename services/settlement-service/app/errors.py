class SettlementError(Exception):
    """
    Base for every recoverable engine error.
    `message` is safe to show to the end user; `status_code` is what the HTTP layer returns.
    """

    status_code = 400
    code = "settlement_error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message()
        super().__init__(self.message)

    def default_message(self) -> str:
        return "Request could not be processed"


class ValidationError(SettlementError):
    code = "validation_error"


class NotFound(SettlementError):
    status_code = 404
    code = "not_found"


class Forbidden(SettlementError):
    status_code = 403
    code = "forbidden"


class NotAssignedProvider(Forbidden):
    code = "not_assigned_provider"

    def default_message(self) -> str:
        return "Only the provider assigned to this job can do that"


class EntitlementExhausted(SettlementError):
    status_code = 409
    code = "entitlement_exhausted"

    def __init__(self, reason: str = "NoEntitlement", message: str | None = None):
        self.reason = reason
        super().__init__(message)

    def default_message(self) -> str:
        return "Your package has no credits left for this service in the current cycle"


class InvalidTransition(SettlementError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, requested: str, message: str | None = None):
        self.current = current
        self.requested = requested
        super().__init__(message)

    def default_message(self) -> str:
        return f"Cannot {self.requested} while status is {self.current}"


class AcceptanceExpired(SettlementError):
    status_code = 409
    code = "acceptance_expired"

    def default_message(self) -> str:
        return "The acceptance window for this job has closed"


class ConcurrentAssignmentLost(SettlementError):
    status_code = 409
    code = "assignment_lost"

    def default_message(self) -> str:
        return "This job was just accepted by someone else"


class PayoutAlreadySettled(SettlementError):
    status_code = 409
    code = "payout_already_settled"

    def default_message(self) -> str:
        return "A payout for this booking is already batched or paid"


class DiscrepancyDetected(SettlementError):
    status_code = 409
    code = "discrepancy_detected"

    def __init__(self, discrepancy_amount, message: str | None = None):
        self.discrepancy_amount = discrepancy_amount
        super().__init__(message)

    def default_message(self) -> str:
        return f"Reconciliation shows a discrepancy of {self.discrepancy_amount}; add notes before closing"


class BatchIntegrityError(SettlementError):
    status_code = 500
    code = "batch_integrity_error"
