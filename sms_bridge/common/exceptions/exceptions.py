# sms_bridge/common/exceptions/exceptions.py
# =============================================================================
# Custom exceptions for the SMS bridge
# =============================================================================


class BridgeError(Exception):
    """Base exception for the bridge"""
    pass


class ConfigurationError(BridgeError):
    """Raised when a mandatory setting is missing or invalid at startup"""

    def __init__(self, message: str, missing: tuple = ()):
        super().__init__(message)
        self.missing = tuple(missing)


class MalformedInputError(BridgeError):
    """Raised when a queue payload cannot be parsed. Never retried."""
    pass


class RelayError(BridgeError):
    """Base class for errors raised inside the retryable relay unit"""
    pass


class RoomResolutionError(RelayError):
    """Raised when index lookup, alias resolution and room creation all fail"""

    def __init__(self, message: str, source_id: str = ""):
        super().__init__(message)
        self.source_id = source_id


class MembershipError(RelayError):
    """Raised when the homeserver rejects a state query or invite"""

    def __init__(self, message: str, room_id: str = "", account_id: str = ""):
        super().__init__(message)
        self.room_id = room_id
        self.account_id = account_id


class DeliveryError(RelayError):
    """Raised when the homeserver rejects a message send"""

    def __init__(self, message: str, room_id: str = ""):
        super().__init__(message)
        self.room_id = room_id
