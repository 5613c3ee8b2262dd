# Matrix client-server integration
from sms_bridge.infra.matrix.client import MatrixClient
from sms_bridge.infra.matrix.registration import Registration, load_registration, generate_registration

__all__ = ["MatrixClient", "Registration", "load_registration", "generate_registration"]
