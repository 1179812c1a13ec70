"""Error taxonomy for the claim pipeline.

Every class carries a ``kind`` string. The orchestrator records that kind as
the failure reason of the operation, so callers can branch on it without
matching exception types.
"""


class ClaimError(Exception):
    kind = "ClaimError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class EncodingError(ClaimError):
    """A value does not match its declared ABI type, or bytes are not a canonical encoding."""

    kind = "EncodingError"


class ConfigError(ClaimError):
    kind = "ConfigError"


class InvalidAmount(ClaimError):
    """Requested amount is zero, negative or larger than what has vested."""

    kind = "InvalidAmount"


class NetworkError(ClaimError):
    """Transient transport failure. The whole operation may be retried by the user."""

    kind = "NetworkError"


class Timeout(NetworkError):
    kind = "Timeout"


class OracleRejected(ClaimError):
    """The oracle declared the request invalid. Retrying the same payload will not help."""

    kind = "OracleRejected"

    def __init__(self, message: str = "", code: int | None = None):
        super().__init__(message)
        self.code = code


class AttestationError(ClaimError):
    kind = "AttestationError"


class Ineligible(AttestationError):
    kind = "Ineligible"


class ParameterMismatch(AttestationError):
    kind = "ParameterMismatch"


class MalformedBundle(AttestationError):
    kind = "MalformedBundle"


class SimulationReverted(ClaimError):
    """The dry run of a call failed; nothing was broadcast."""

    kind = "SimulationReverted"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class TransactionReverted(ClaimError):
    kind = "TransactionReverted"

    def __init__(self, reason: str, tx_id: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.tx_id = tx_id


class UserCancelled(ClaimError):
    kind = "UserCancelled"


class StateError(ClaimError):
    """An operation state transition that the state machine does not allow."""

    kind = "StateError"


class OperationInProgress(StateError):
    kind = "OperationInProgress"
