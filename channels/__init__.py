"""Delivery surfaces: session pool, worker base and concrete workers."""
from channels.sessions import Session, SessionDriver, SessionManager
from channels.base import DeliveryMetrics, DeliveryWorker
from channels.simulated import SimulatedDriver, SimulatedWorker
from channels.factory import create_delivery_stack

__all__ = [
    "Session", "SessionDriver", "SessionManager",
    "DeliveryMetrics", "DeliveryWorker",
    "SimulatedDriver", "SimulatedWorker",
    "create_delivery_stack",
]
