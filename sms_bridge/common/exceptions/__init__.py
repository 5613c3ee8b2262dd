from sms_bridge.common.exceptions.exceptions import (
    BridgeError,
    ConfigurationError,
    MalformedInputError,
    RelayError,
    RoomResolutionError,
    MembershipError,
    DeliveryError,
)

__all__ = [
    "BridgeError",
    "ConfigurationError",
    "MalformedInputError",
    "RelayError",
    "RoomResolutionError",
    "MembershipError",
    "DeliveryError",
]
