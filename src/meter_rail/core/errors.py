"""
Error Taxonomy for Meter Rail

Every failure surfaced by the engine is one of these. Callers catch
MeterRailError to handle the whole family; the HTTP layer maps each
subclass to a status code.
"""


class MeterRailError(Exception):
    """Base class for all engine errors."""
    code = "METER_RAIL_ERROR"


class InvalidConfiguration(MeterRailError):
    """Bad input to create/normalize (non-positive rate, unknown time unit)."""
    code = "INVALID_CONFIGURATION"


class SessionNotFound(MeterRailError):
    """Raised when a session id is unknown."""
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str, message: str = ""):
        super().__init__(message or f"Session not found: {session_id}")
        self.session_id = session_id


class SessionNotActive(SessionNotFound):
    """The session exists but has already ended."""
    code = "SESSION_NOT_ACTIVE"

    def __init__(self, session_id: str):
        super().__init__(session_id, f"Session already ended: {session_id}")


class SettlementNotFound(MeterRailError):
    """Raised when a settlement id is unknown."""
    code = "SETTLEMENT_NOT_FOUND"

    def __init__(self, settlement_id: str):
        super().__init__(f"Settlement not found: {settlement_id}")
        self.settlement_id = settlement_id


class CapConflict(MeterRailError):
    """Session cap does not fit inside the remaining universal cap."""
    code = "CAP_CONFLICT"


class UnknownCurrency(MeterRailError):
    """Fiat currency code missing from the rate snapshot."""
    code = "UNKNOWN_CURRENCY"

    def __init__(self, currency: str):
        super().__init__(f"Unknown currency: {currency}")
        self.currency = currency


class UnknownUnit(MeterRailError):
    """Settlement unit symbol missing from the rate snapshot."""
    code = "UNKNOWN_UNIT"

    def __init__(self, unit: str):
        super().__init__(f"Unknown settlement unit: {unit}")
        self.unit = unit


class InvalidStateTransition(MeterRailError):
    """Settlement status change not allowed from its current status."""
    code = "INVALID_STATE_TRANSITION"


class RateRefreshError(MeterRailError):
    """A rate feed could not produce a usable snapshot."""
    code = "RATE_REFRESH_ERROR"
