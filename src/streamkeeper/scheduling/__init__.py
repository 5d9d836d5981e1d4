"""Scheduling: periodic backends, timers, termination, trigger loop, reconciler."""

from streamkeeper.scheduling.backend import AsyncioSchedulerBackend
from streamkeeper.scheduling.protocol import BackendHealth, SchedulerBackend, TickCallback
from streamkeeper.scheduling.reconciler import Finding, HealthReport, Reconciler, SyncReport
from streamkeeper.scheduling.termination import (
    DirectTimer,
    PeriodicRecheckTimer,
    TerminationScheduler,
    TerminationTimer,
)
from streamkeeper.scheduling.timers import TimerFacility, TimerHandle
from streamkeeper.scheduling.trigger import TriggerLoop, TriggerStats

__all__ = [
    "AsyncioSchedulerBackend",
    "BackendHealth",
    "DirectTimer",
    "Finding",
    "HealthReport",
    "PeriodicRecheckTimer",
    "Reconciler",
    "SchedulerBackend",
    "SyncReport",
    "TerminationScheduler",
    "TerminationTimer",
    "TickCallback",
    "TimerFacility",
    "TimerHandle",
    "TriggerLoop",
    "TriggerStats",
]
