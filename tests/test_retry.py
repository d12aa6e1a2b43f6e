import pytest
from sqlalchemy.exc import IntegrityError

from sql_chatbot.db.retry import is_retryable, with_retry
from sql_chatbot.errors import NotFoundError, UnauthorizedError, ValidationError


class Flaky:
    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or ConnectionError("connection reset")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


def test_retries_with_exponential_backoff():
    delays = []
    op = Flaky(failures=2)
    assert with_retry(op, max_retries=3, base_delay=1.0, sleep=delays.append) == "ok"
    assert op.calls == 3
    assert delays == [1.0, 2.0]


def test_raises_last_error_after_retries_exhausted():
    delays = []
    op = Flaky(failures=10)
    with pytest.raises(ConnectionError):
        with_retry(op, max_retries=3, base_delay=0.5, sleep=delays.append)
    assert op.calls == 4
    assert delays == [0.5, 1.0, 2.0]


@pytest.mark.parametrize(
    "error",
    [
        UnauthorizedError(),
        NotFoundError("Conversation abc"),
        ValidationError("bad input"),
        RuntimeError("Record NOT FOUND"),
        RuntimeError("Invalid column"),
        RuntimeError("request unauthorized"),
    ],
)
def test_non_retryable_errors_fail_immediately(error):
    delays = []
    op = Flaky(failures=1, error=error)
    with pytest.raises(type(error)):
        with_retry(op, sleep=delays.append)
    assert op.calls == 1
    assert delays == []


def test_is_retryable():
    assert is_retryable(TimeoutError("timed out"))
    assert not is_retryable(NotFoundError("x"))


def test_constraint_violations_are_not_retried():
    delays = []
    op = Flaky(failures=1, error=IntegrityError("INSERT INTO accounts", {}, Exception("UNIQUE constraint failed")))
    with pytest.raises(IntegrityError):
        with_retry(op, sleep=delays.append)
    assert op.calls == 1
    assert delays == []
