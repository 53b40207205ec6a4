import pytest
from pymongo.errors import (
    AutoReconnect,
    DuplicateKeyError,
    ExecutionTimeout,
    NetworkTimeout,
    OperationFailure,
    ServerSelectionTimeoutError,
    WaitQueueTimeoutError,
)

from accounts import AccountStore
from database import store_call
from errors import StorageUnavailable


@pytest.mark.parametrize(
    "error",
    [
        AutoReconnect("connection lost"),
        ServerSelectionTimeoutError("no primary available"),
        WaitQueueTimeoutError("connection pool exhausted"),
        NetworkTimeout("socket timed out"),
        ExecutionTimeout("operation exceeded time limit", 50),
    ],
)
def test_unreachable_store_is_reported_as_unavailable(error):
    with pytest.raises(StorageUnavailable) as exc:
        with store_call(1):
            raise error
    assert exc.value.status_code == 503
    assert exc.value.__cause__ is error


def test_other_store_errors_pass_through():
    with pytest.raises(DuplicateKeyError):
        with store_call(1):
            raise DuplicateKeyError("E11000 duplicate key", 11000)
    with pytest.raises(OperationFailure):
        with store_call(1):
            raise OperationFailure("bad query", 2)


class UnreachableCollection:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise ServerSelectionTimeoutError("no primary available")
        return fail


class UnreachableDatabase:
    def __getitem__(self, name):
        return UnreachableCollection()


def test_lookup_during_outage_is_not_a_missing_account():
    store = AccountStore(UnreachableDatabase(), timeout_seconds=1)
    with pytest.raises(StorageUnavailable):
        store.find_by_email("aiko@example.com")
