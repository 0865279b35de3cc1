import pytest

from formgate.errors import SentinelHttpError, SentinelWrappedError, wrap_error


def test_new_sentinel_http_error():
    actual = SentinelHttpError(500, "foo")
    assert actual.status == 500
    assert actual.message == "foo"
    assert actual == SentinelHttpError(500, "foo")


def test_sentinel_http_error_str():
    assert str(SentinelHttpError(0, "foo")) == "foo"


def test_sentinel_http_error_http_error():
    assert SentinelHttpError(500, "foo").http_error() == (500, "foo")


def test_sentinel_http_error_inequality():
    assert SentinelHttpError(500, "foo") != SentinelHttpError(400, "foo")
    assert SentinelHttpError(500, "foo") != SentinelHttpError(500, "bar")


def test_sentinel_wrapped_error_matches():
    sentinel = SentinelHttpError(0, "")
    err = SentinelWrappedError(ValueError("foo"), sentinel)
    assert err.matches(sentinel) is True
    assert err.matches(SentinelHttpError(400, "other")) is False


def test_sentinel_wrapped_error_http_error():
    expect = SentinelHttpError(500, "foo").http_error()
    actual = SentinelWrappedError(ValueError("foo"), SentinelHttpError(500, "foo")).http_error()
    assert actual == expect


def test_wrap_error():
    err_foo = ValueError("foo")
    expect = SentinelWrappedError(err_foo, SentinelHttpError(500, "foo"))
    actual = wrap_error(err_foo, SentinelHttpError(500, "foo"))
    assert actual == expect


def test_wrap_error_keeps_internal_message_and_cause():
    err_foo = ValueError("internal detail")
    with pytest.raises(SentinelWrappedError) as info:
        raise wrap_error(err_foo, SentinelHttpError(403, "Forbidden"))
    assert str(info.value) == "internal detail"
    assert info.value.__cause__ is err_foo
    assert info.value.http_error() == (403, "Forbidden")