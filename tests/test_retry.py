import pytest

from newsintake.errors import ErrorKind, IngestError
from newsintake.retry import RetryPolicy, backoff_delay, is_retryable_error, with_retry


class Flaky:
    def __init__(self, failures):
        self.failures = list(failures)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "ok"


def test_retries_transient_errors_with_exponential_backoff():
    delays = []
    operation = Flaky(
        [
            IngestError("timeout", ErrorKind.TRANSIENT),
            IngestError("HTTP 503", ErrorKind.SERVER, http_status=503),
        ]
    )
    result = with_retry(
        operation, max_retries=3, base_delay=0.5, jitter=False, sleep=delays.append
    )
    assert result == "ok"
    assert operation.calls == 3
    assert delays == [0.5, 1.0]


def test_non_retryable_error_is_raised_immediately():
    delays = []
    operation = Flaky([IngestError("HTTP 404", ErrorKind.NOT_FOUND, http_status=404)])
    with pytest.raises(IngestError) as excinfo:
        with_retry(operation, max_retries=5, sleep=delays.append)
    assert excinfo.value.kind == ErrorKind.NOT_FOUND
    assert operation.calls == 1
    assert delays == []


def test_exhausted_attempts_raise_last_error():
    delays = []
    errors = [IngestError(f"attempt {n}", ErrorKind.RATE_LIMITED) for n in range(1, 5)]
    operation = Flaky(errors)
    with pytest.raises(IngestError, match="attempt 3"):
        with_retry(operation, max_retries=3, base_delay=1.0, jitter=False, sleep=delays.append)
    assert operation.calls == 3
    assert delays == [1.0, 2.0]


def test_single_attempt_never_sleeps():
    delays = []
    operation = Flaky([IngestError("down", ErrorKind.TRANSIENT)])
    with pytest.raises(IngestError):
        with_retry(operation, max_retries=1, sleep=delays.append)
    assert delays == []


def test_backoff_jitter_stays_within_bounds():
    for _ in range(50):
        delay = backoff_delay(3, 1.0, jitter=True)
        assert 2.0 <= delay <= 6.0
    assert backoff_delay(1, 2.0, jitter=False) == 2.0


def test_retryable_classification():
    assert is_retryable_error(IngestError("x", ErrorKind.TRANSIENT))
    assert is_retryable_error(IngestError("x", ErrorKind.RATE_LIMITED))
    assert is_retryable_error(IngestError("x", ErrorKind.SERVER))
    assert not is_retryable_error(IngestError("x", ErrorKind.QUOTA_EXHAUSTED))
    assert not is_retryable_error(IngestError("x", ErrorKind.PARSE))
    assert is_retryable_error(TimeoutError())
    assert not is_retryable_error(ValueError("bad"))


def test_policy_runs_with_configured_values():
    delays = []
    policy = RetryPolicy(max_retries=2, base_delay_seconds=0.25, jitter=False, sleep=delays.append)
    operation = Flaky([ConnectionError("reset")])
    assert policy.run(operation) == "ok"
    assert delays == [0.25]
