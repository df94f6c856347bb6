"""
Scheduler — poll loop, duplicate-dispatch guard and status reconciliation.

Quick start:
  from scheduler import DeliveryScheduler
  scheduler = DeliveryScheduler(store, worker)
  await scheduler.start()
"""
from scheduler.inflight import InFlightSet
from scheduler.loop import DeliveryScheduler

__all__ = ["InFlightSet", "DeliveryScheduler"]
