"""Scheduled task system — triggers, persistence, execution, audit, and events."""

from taskmanager.scheduler.audit import AuditRecord, AuditService, InMemoryAuditStore, SqliteAuditStore
from taskmanager.scheduler.consumer import ConsumerRegistry, Payload, TaskConsumer
from taskmanager.scheduler.dispatcher import TaskDispatcher
from taskmanager.scheduler.engine import SchedulerEngine
from taskmanager.scheduler.events import EventBus, ExecutionEvent
from taskmanager.scheduler.models import (
    AtDateTime,
    Cron,
    Immediate,
    Interval,
    TaskBinding,
    TaskKey,
    TaskSnapshot,
    TaskState,
)
from taskmanager.scheduler.policy import MisfirePolicy, RetryPolicy
from taskmanager.scheduler.store import InMemoryTriggerStore, SqliteTriggerStore

__all__ = [
    "AtDateTime",
    "AuditRecord",
    "AuditService",
    "ConsumerRegistry",
    "Cron",
    "EventBus",
    "ExecutionEvent",
    "Immediate",
    "InMemoryAuditStore",
    "InMemoryTriggerStore",
    "Interval",
    "MisfirePolicy",
    "Payload",
    "RetryPolicy",
    "SchedulerEngine",
    "SqliteAuditStore",
    "SqliteTriggerStore",
    "TaskBinding",
    "TaskConsumer",
    "TaskDispatcher",
    "TaskKey",
    "TaskSnapshot",
    "TaskState",
]
