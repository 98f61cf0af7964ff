"""Unit tests for utility helpers."""

import pytest

from mailmirror.exceptions import RemoteError, StorageError
from mailmirror.utils import retry_on_failure


def test_retry_succeeds_after_transient_failures() -> None:
    attempts = []

    @retry_on_failure(max_retries=2, delay=0, exceptions=(StorageError,))
    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise StorageError("database is locked")
        return "ok"

    assert flaky() == "ok"
    assert len(attempts) == 3


def test_retry_gives_up_and_reraises() -> None:
    attempts = []

    @retry_on_failure(max_retries=1, delay=0, exceptions=(StorageError,))
    def broken() -> None:
        attempts.append(1)
        raise StorageError("disk I/O error")

    with pytest.raises(StorageError, match="disk I/O error"):
        broken()
    assert len(attempts) == 2


def test_other_exceptions_are_not_retried() -> None:
    attempts = []

    @retry_on_failure(max_retries=3, delay=0, exceptions=(StorageError,))
    def remote() -> None:
        attempts.append(1)
        raise RemoteError("boom")

    with pytest.raises(RemoteError):
        remote()
    assert len(attempts) == 1
