"""
Fault Injector Core Module
"""

from faultinjector.core.delivery import deliver
from faultinjector.core.faults import FAULT_MODES, BodyChoice, ConnectionAction, DeliveryPlan, resolve
from faultinjector.core.headers import HeaderClass, classify_header
from faultinjector.core.relay import CapturedResponse, IncomingRequest, UpstreamRelay

__all__ = [
    "BodyChoice",
    "CapturedResponse",
    "ConnectionAction",
    "DeliveryPlan",
    "FAULT_MODES",
    "HeaderClass",
    "IncomingRequest",
    "UpstreamRelay",
    "classify_header",
    "deliver",
    "resolve",
]
