"""Task consumers — registry and the execution lifecycle around them."""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from taskmanager.errors import ConsumerBuildError, MaxRetriesExceededError, UnknownConsumerError
from taskmanager.scheduler.events import ExecutionEvent, stamp
from taskmanager.scheduler.models import RETRY_KEY, TaskOutcome

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from taskmanager.scheduler.events import ExecutionEvents
    from taskmanager.scheduler.models import TaskBinding
    from taskmanager.scheduler.policy import RetryPolicy

logger = logging.getLogger(__name__)


class Payload(BaseModel):
    """Base class for consumer payloads.

    Subclass with the fields a consumer needs.  Building from the property
    map via ``model_validate`` raises on missing or invalid fields, which the
    lifecycle reports as a ConsumerBuildError.
    """

    model_config = ConfigDict(extra="ignore")

    group_id: str
    task_id: str
    task_type: str


@runtime_checkable
class TaskConsumer(Protocol):
    """Execution body for one task type."""

    def build_payload(self, properties: dict[str, Any]) -> Payload:
        """Build the typed payload from the task's flat property map."""
        ...

    async def consume(self, payload: Any) -> None:
        """Do the work.  Raise to report failure."""
        ...


class ConsumerRegistry:
    """Maps stored consumer-type tags to consumer instances.

    Usage::

        registry = ConsumerRegistry()

        @registry.consumer("email")
        class EmailConsumer:
            def build_payload(self, properties): ...
            async def consume(self, payload): ...
    """

    def __init__(self) -> None:
        self._consumers: dict[str, TaskConsumer] = {}

    def register(self, tag: str, consumer: TaskConsumer) -> None:
        """Register a consumer instance.  Raises ValueError on a duplicate tag."""
        if tag in self._consumers:
            msg = f"Consumer '{tag}' is already registered"
            raise ValueError(msg)
        if not isinstance(consumer, TaskConsumer):
            msg = f"Consumer '{tag}' must define build_payload() and consume()"
            raise TypeError(msg)
        self._consumers[tag] = consumer
        logger.info("Registered consumer: %s", tag)

    def consumer(self, tag: str) -> Callable[[type], type]:
        """Class decorator: instantiate the class and register it under *tag*."""

        def decorator(cls: type) -> type:
            self.register(tag, cls())
            return cls

        return decorator

    def get(self, tag: str) -> TaskConsumer | None:
        return self._consumers.get(tag)

    def require(self, tag: str) -> TaskConsumer:
        consumer = self._consumers.get(tag)
        if consumer is None:
            raise UnknownConsumerError(tag)
        return consumer

    def __contains__(self, tag: object) -> bool:
        return tag in self._consumers

    @property
    def tags(self) -> list[str]:
        return list(self._consumers)


class ConsumerLifecycle:
    """Runs a binding's consumer and reports the outcome.

    Emits exactly one ExecutionEvent per run, then re-raises any failure so
    the engine can route it into the retry policy.

    Args:
        registry: Resolves the binding's consumer type.
        events: Receives the execution event.
        retry_policy: Used to tell a final failed attempt from a retryable one.
    """

    def __init__(
        self,
        registry: ConsumerRegistry,
        events: ExecutionEvents,
        retry_policy: RetryPolicy,
    ) -> None:
        self._registry = registry
        self._events = events
        self._retry_policy = retry_policy

    @staticmethod
    def properties(binding: TaskBinding) -> dict[str, Any]:
        """Flatten the binding's parameters and identity into one map."""
        properties = {k: v for k, v in binding.parameters.items() if k != RETRY_KEY}
        properties.update(
            group_id=binding.group_id,
            task_id=binding.task_id,
            task_type=binding.consumer_type,
        )
        return properties

    def _build(self, binding: TaskBinding, properties: dict[str, Any]) -> tuple[TaskConsumer, Any]:
        try:
            consumer = self._registry.require(binding.consumer_type)
            return consumer, consumer.build_payload(properties)
        except ConsumerBuildError:
            raise
        except Exception as exc:
            msg = f"Failed to build payload for task type '{binding.consumer_type}': {exc}"
            raise ConsumerBuildError(msg) from exc

    async def run(self, binding: TaskBinding, *, fire_time: datetime, misfire: bool = False) -> None:
        properties = self.properties(binding)
        started = time.monotonic()
        try:
            consumer, payload = self._build(binding, properties)
            await consumer.consume(payload)
        except Exception as exc:
            elapsed = int((time.monotonic() - started) * 1000)
            self._emit(binding, properties, fire_time, elapsed, misfire, error=exc)
            raise
        elapsed = int((time.monotonic() - started) * 1000)
        self._emit(binding, properties, fire_time, elapsed, misfire)

    def _emit(
        self,
        binding: TaskBinding,
        properties: dict[str, Any],
        fire_time: datetime,
        run_time_ms: int,
        misfire: bool,
        error: Exception | None = None,
    ) -> None:
        context = self._retry_policy.context_of(binding)
        line = (
            f"{stamp()} | Consumed task type '{binding.consumer_type}' "
            f"| Group Id: {binding.group_id} | Task Id: {binding.task_id}"
        )
        log = None
        if error is not None:
            log = str(error) or type(error).__name__
            if not binding.is_recurring and context.exhausted:
                log = str(MaxRetriesExceededError(binding.key, context.attempt + 1, error))
            line = (
                f"{stamp()} | Failed to consume task type '{binding.consumer_type}' "
                f"| Group Id: {binding.group_id} | Task Id: {binding.task_id} | Error: {log}"
            )
        if misfire:
            line += " | Misfire"
        detail = json.dumps(
            {"parameters": properties, "retry": context.to_dict()}, default=str, sort_keys=True
        )
        self._events.emit(
            ExecutionEvent(
                group_id=binding.group_id,
                task_id=binding.task_id,
                consumer_type=binding.consumer_type,
                fire_time=fire_time,
                run_time_ms=run_time_ms,
                outcome=TaskOutcome.ERROR if error is not None else TaskOutcome.SUCCESS,
                line=line,
                log=log,
                detail=detail,
                misfire=misfire,
            )
        )
