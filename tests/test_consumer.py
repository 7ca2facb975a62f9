"""Tests for ConsumerRegistry and ConsumerLifecycle."""

import json
from datetime import UTC, datetime

import pytest

from taskmanager.errors import ConsumerBuildError, UnknownConsumerError
from taskmanager.scheduler.consumer import ConsumerLifecycle, ConsumerRegistry, Payload
from taskmanager.scheduler.events import ExecutionEvents
from taskmanager.scheduler.models import RETRY_KEY, Immediate, Interval, TaskBinding, TaskOutcome
from taskmanager.scheduler.policy import RetryContext, RetryPolicy

FIRE = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


class EmailPayload(Payload):
    to: str


class EmailConsumer:
    def __init__(self) -> None:
        self.sent: list[str] = []

    def build_payload(self, properties: dict) -> EmailPayload:
        return EmailPayload.model_validate(properties)

    async def consume(self, payload: EmailPayload) -> None:
        if payload.to == "bounce@example.com":
            msg = "mailbox unavailable"
            raise ConnectionError(msg)
        self.sent.append(payload.to)


def _binding(parameters: dict, schedule=None, retry: RetryContext | None = None) -> TaskBinding:
    parameters = dict(parameters)
    parameters[RETRY_KEY] = (retry or RetryContext()).to_dict()
    return TaskBinding("mail", "welcome", "email", schedule or Immediate(), FIRE,
                       parameters=parameters)


@pytest.fixture
def email() -> EmailConsumer:
    return EmailConsumer()


@pytest.fixture
def events() -> tuple[ExecutionEvents, list]:
    hub = ExecutionEvents()
    seen: list = []
    hub.subscribe(seen.append)
    return hub, seen


@pytest.fixture
def lifecycle(email, events) -> ConsumerLifecycle:
    registry = ConsumerRegistry()
    registry.register("email", email)
    return ConsumerLifecycle(registry, events[0], RetryPolicy())


# -- Registry ------------------------------------------------------------------


class TestConsumerRegistry:
    def test_register_and_lookup(self, email):
        registry = ConsumerRegistry()
        registry.register("email", email)

        assert "email" in registry
        assert registry.get("email") is email
        assert registry.require("email") is email
        assert registry.tags == ["email"]

    def test_duplicate_tag_raises(self, email):
        registry = ConsumerRegistry()
        registry.register("email", email)
        with pytest.raises(ValueError, match="already registered"):
            registry.register("email", EmailConsumer())

    def test_rejects_object_without_consumer_methods(self):
        with pytest.raises(TypeError):
            ConsumerRegistry().register("bad", object())

    def test_require_unknown_raises(self):
        with pytest.raises(UnknownConsumerError):
            ConsumerRegistry().require("missing")
        assert ConsumerRegistry().get("missing") is None

    def test_decorator_registers_instance(self):
        registry = ConsumerRegistry()

        @registry.consumer("email")
        class DecoratedConsumer(EmailConsumer):
            pass

        assert isinstance(registry.get("email"), DecoratedConsumer)


# -- Lifecycle -----------------------------------------------------------------


def test_properties_flatten_identity_and_hide_retry() -> None:
    properties = ConsumerLifecycle.properties(_binding({"to": "a@example.com"}))
    assert properties == {
        "to": "a@example.com",
        "group_id": "mail",
        "task_id": "welcome",
        "task_type": "email",
    }


async def test_successful_run_emits_one_event(lifecycle, email, events) -> None:
    await lifecycle.run(_binding({"to": "a@example.com"}), fire_time=FIRE)

    assert email.sent == ["a@example.com"]
    _, seen = events
    assert len(seen) == 1
    event = seen[0]
    assert event.outcome == TaskOutcome.SUCCESS
    assert event.log is None
    assert event.fire_time == FIRE
    assert event.misfire is False
    assert "Consumed task type 'email' | Group Id: mail | Task Id: welcome" in event.line
    assert json.loads(event.detail)["parameters"]["to"] == "a@example.com"


async def test_failed_run_emits_error_and_reraises(lifecycle, events) -> None:
    with pytest.raises(ConnectionError):
        await lifecycle.run(_binding({"to": "bounce@example.com"}), fire_time=FIRE)

    _, seen = events
    assert len(seen) == 1
    assert seen[0].outcome == TaskOutcome.ERROR
    assert seen[0].log == "mailbox unavailable"
    assert "Failed to consume task type 'email'" in seen[0].line
    assert seen[0].line.endswith("| Error: mailbox unavailable")


async def test_final_attempt_logs_max_retries(lifecycle, events) -> None:
    binding = _binding(
        {"to": "bounce@example.com"}, retry=RetryContext(attempt=2, max_attempts=2)
    )
    with pytest.raises(ConnectionError):
        await lifecycle.run(binding, fire_time=FIRE)

    _, seen = events
    assert seen[0].log.startswith("Max retries exceeded for mail.welcome after 3 attempt(s)")


async def test_recurring_failure_never_reports_max_retries(lifecycle, events) -> None:
    binding = _binding(
        {"to": "bounce@example.com"},
        schedule=Interval(minutes=1),
        retry=RetryContext(attempt=0, max_attempts=0),
    )
    with pytest.raises(ConnectionError):
        await lifecycle.run(binding, fire_time=FIRE)

    assert events[1][0].log == "mailbox unavailable"


async def test_payload_build_failure(lifecycle, email, events) -> None:
    with pytest.raises(ConsumerBuildError, match="Failed to build payload"):
        await lifecycle.run(_binding({}), fire_time=FIRE)

    assert email.sent == []
    assert events[1][0].outcome == TaskOutcome.ERROR


async def test_unknown_consumer_is_a_build_failure(events) -> None:
    lifecycle = ConsumerLifecycle(ConsumerRegistry(), events[0], RetryPolicy())
    with pytest.raises(ConsumerBuildError):
        await lifecycle.run(_binding({"to": "a@example.com"}), fire_time=FIRE)


async def test_misfire_is_marked_on_line(lifecycle, events) -> None:
    await lifecycle.run(_binding({"to": "a@example.com"}), fire_time=FIRE, misfire=True)

    event = events[1][0]
    assert event.misfire is True
    assert event.line.endswith("| Misfire")
