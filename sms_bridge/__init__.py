# =============================================================================
# File: sms_bridge/__init__.py
# Description: Kafka → Matrix bridge for inbound SMS messages
# =============================================================================

__version__ = "0.3.0"
