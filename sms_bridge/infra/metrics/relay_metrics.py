# sms_bridge/infra/metrics/relay_metrics.py
"""
Relay Metrics

Prometheus metrics for the SMS → Matrix relay:
- Queue intake (received / dropped)
- Relay unit attempts and outcomes
- Homeserver side effects (rooms created, invites sent)
"""

import logging
from typing import Optional

from prometheus_client import Counter, Histogram, start_http_server

log = logging.getLogger("sms_bridge.metrics")

# ============================================================================
# Intake
# ============================================================================

messages_received_total = Counter(
    'bridge_messages_received_total',
    'Queue records handed to the relay pipeline',
    ['topic']
)

messages_dropped_total = Counter(
    'bridge_messages_dropped_total',
    'Queue records dropped without relaying',
    ['reason']
)

# ============================================================================
# Relay unit
# ============================================================================

relay_attempts_total = Counter(
    'bridge_relay_attempts_total',
    'Relay unit runs (resolve → ensure membership → send), including retries'
)

relay_completed_total = Counter(
    'bridge_relay_completed_total',
    'Relay units reaching a terminal state',
    ['outcome']
)

relay_duration_seconds = Histogram(
    'bridge_relay_duration_seconds',
    'Time from receipt to terminal state, including backoff',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# ============================================================================
# Homeserver side effects
# ============================================================================

rooms_created_total = Counter(
    'bridge_rooms_created_total',
    'Rooms created for new sources'
)

invites_sent_total = Counter(
    'bridge_invites_sent_total',
    'Invites issued to the target account'
)


def start_metrics_server(port: Optional[int]) -> None:
    """Expose /metrics on `port` when configured."""
    if not port:
        return
    start_http_server(port)
    log.info(f"Prometheus metrics exposed on :{port}/metrics")
