import pytest

from gremcos.errors import (
    ConnectivityError,
    ErrorCategory,
    GremcosError,
    NoConnectionError,
)


def test_no_connection_error_is_a_connectivity_error():
    err = NoConnectionError()
    assert isinstance(err, ConnectivityError)
    assert isinstance(err, GremcosError)
    assert err.category is ErrorCategory.CONNECTIVITY


def test_general_error_default_category():
    err = GremcosError("boom")
    assert err.category is ErrorCategory.GENERAL
    assert str(err) == "boom"


def test_category_can_be_overridden():
    err = GremcosError("boom", category=ErrorCategory.CONNECTIVITY)
    assert err.category is ErrorCategory.CONNECTIVITY
    assert GremcosError.category is ErrorCategory.GENERAL


def test_connectivity_error_keeps_cause():
    cause = OSError("ERROR")
    with pytest.raises(ConnectivityError) as info:
        try:
            raise cause
        except OSError as exc:
            raise ConnectivityError(str(exc)) from exc
    assert info.value.__cause__ is cause
    assert str(info.value) == "ERROR"
    assert info.value.category is ErrorCategory.CONNECTIVITY


def test_no_connection_error_custom_message():
    err = NoConnectionError("socket gone")
    assert str(err) == "socket gone"