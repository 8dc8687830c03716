"""Orchestration engine - state machine, registry, retries, routing"""
from .state_machine import ComplaintStateMachine, TRANSITIONS, TERMINAL_STATUSES
from .registry import DepartmentRegistry, RegistrySnapshot
from .retry import RetryPolicy, RetryScheduler, RetryOutcome
from .routing import RoutingEngine
from .audit_writer import AuditWriter

__all__ = [
    "ComplaintStateMachine",
    "TRANSITIONS",
    "TERMINAL_STATUSES",
    "DepartmentRegistry",
    "RegistrySnapshot",
    "RetryPolicy",
    "RetryScheduler",
    "RetryOutcome",
    "RoutingEngine",
    "AuditWriter",
]
