"""Tests for bounded retry and the structured logging helpers."""

import json
import logging
import threading

import pytest

from flowgraph.core.error_recovery import RetryConfig, RetryExhaustedError, execute_with_retry
from flowgraph.core.exceptions import ExecutionCancelledError, InvokerError, TransientError
from flowgraph.core.logging import (
    RunContextFilter,
    StructuredFormatter,
    clear_logging_context,
    logging_context,
    set_logging_context,
)


class FlakyCall:
    """Fails with the given errors, then returns ``result``."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestRetryConfig:
    """Test cases for RetryConfig."""

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)

    def test_exponential_delay_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)

        assert [config.get_delay(attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_retry_after_raises_the_delay(self):
        config = RetryConfig(base_delay=0.5, max_delay=10.0, jitter=False)

        assert config.get_delay(1, TransientError("busy", retry_after=3)) == 3.0

    def test_only_recoverable_errors_are_retried(self):
        config = RetryConfig(max_attempts=3)

        assert config.should_retry(TransientError("busy"), 1)
        assert not config.should_retry(TransientError("busy"), 3)
        assert not config.should_retry(InvokerError("bad request"), 1)
        assert not config.should_retry(ExecutionCancelledError("stop"), 1)
        assert not config.should_retry(KeyError("x"), 1)


class TestExecuteWithRetry:
    """Test cases for execute_with_retry."""

    def setup_method(self):
        self.delays = []
        self.config = RetryConfig(max_attempts=3, base_delay=0.1, jitter=False)

    def test_recovers_after_transient_failures(self):
        call = FlakyCall([TransientError("busy"), TransientError("busy")])

        result = execute_with_retry(call, self.config, "model call", sleep=self.delays.append)

        assert result == "ok"
        assert call.calls == 3
        assert self.delays == [0.1, 0.2]

    def test_exhaustion_wraps_last_error(self):
        call = FlakyCall([TransientError("busy")] * 3)

        with pytest.raises(RetryExhaustedError) as info:
            execute_with_retry(call, self.config, "model call", sleep=self.delays.append)

        assert info.value.attempts == 3
        assert isinstance(info.value.last_error, TransientError)
        assert call.calls == 3

    def test_non_retryable_error_propagates_immediately(self):
        call = FlakyCall([InvokerError("bad request", kind="upstream_rejected")])

        with pytest.raises(InvokerError):
            execute_with_retry(call, self.config, "model call", sleep=self.delays.append)

        assert call.calls == 1
        assert self.delays == []

    def test_cancelled_before_first_attempt(self):
        cancel_event = threading.Event()
        cancel_event.set()
        call = FlakyCall([])

        with pytest.raises(ExecutionCancelledError):
            execute_with_retry(call, self.config, "model call", cancel_event=cancel_event)

        assert call.calls == 0


class TestLoggingContext:
    """The per-run logging context and the JSON formatter."""

    def make_record(self, message="hello"):
        return logging.LogRecord("flowgraph.test", logging.INFO, __file__, 10, message, None, None)

    def teardown_method(self):
        clear_logging_context()

    def test_filter_attaches_context(self):
        set_logging_context(run_id="run-7", node_id="agent")
        record = self.make_record()

        assert RunContextFilter().filter(record)
        assert record.run_id == "run-7"
        assert record.extra_fields == {"run_id": "run-7", "node_id": "agent"}

    def test_context_manager_restores_previous_values(self):
        set_logging_context(run_id="outer")

        with logging_context(run_id="inner", node_id="n1"):
            inner = self.make_record()
            RunContextFilter().filter(inner)

        outer = self.make_record()
        RunContextFilter().filter(outer)
        assert inner.run_id == "inner"
        assert outer.extra_fields == {"run_id": "outer"}

    def test_missing_run_id_placeholder(self):
        record = self.make_record()

        RunContextFilter().filter(record)

        assert record.run_id == "-"

    def test_structured_formatter(self):
        with logging_context(run_id="run-9"):
            record = self.make_record("step done")
            RunContextFilter().filter(record)

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["message"] == "step done"
        assert entry["level"] == "INFO"
        assert entry["run_id"] == "run-9"
