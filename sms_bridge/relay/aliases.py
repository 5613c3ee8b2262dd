# =============================================================================
# File: sms_bridge/relay/aliases.py
# Description: Deterministic room alias and room name derivation
# =============================================================================


def alias_localpart(prefix: str, source_id: str) -> str:
    """sms + 15550001111 -> sms_15550001111"""
    return f"{prefix}_{source_id}"


def full_alias(localpart: str, domain: str) -> str:
    """sms_15550001111 + example.org -> #sms_15550001111:example.org"""
    return f"#{localpart}:{domain}"


def room_name(source_id: str) -> str:
    return f"SMS with {source_id}"
