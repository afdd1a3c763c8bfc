import json

import httpx
import pytest

from wikibase_change_capture.capture.errors import (
    CaptureError,
    ContractError,
    EntityMissingError,
    ErrorKind,
    RetryBudgetExhausted,
    classify_api_error,
    classify_error,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://test.wikidata.org/w/api.php")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("boom", request=request, response=response)


@pytest.mark.unit
@pytest.mark.parametrize("status", [500, 502, 503, 504, 429, 408])
def test_server_side_statuses_are_retryable(status):
    assert classify_error(_status_error(status)) is ErrorKind.RETRYABLE


@pytest.mark.unit
@pytest.mark.parametrize("status", [400, 401, 403, 404, 410])
def test_client_side_statuses_are_fatal(status):
    assert classify_error(_status_error(status)) is ErrorKind.FATAL


@pytest.mark.unit
def test_transport_failures_are_retryable():
    request = httpx.Request("GET", "https://test.wikidata.org/w/api.php")
    assert classify_error(httpx.ReadTimeout("slow", request=request)) is ErrorKind.RETRYABLE
    assert classify_error(httpx.ConnectError("reset", request=request)) is ErrorKind.RETRYABLE
    assert classify_error(ConnectionResetError()) is ErrorKind.RETRYABLE


@pytest.mark.unit
def test_truncated_json_is_retryable():
    with pytest.raises(json.JSONDecodeError) as excinfo:
        json.loads('{"query": {"recentchanges": [')
    assert classify_error(excinfo.value) is ErrorKind.RETRYABLE


@pytest.mark.unit
def test_capture_errors_carry_their_own_kind():
    assert classify_error(ContractError("missing query")) is ErrorKind.FATAL
    assert classify_error(EntityMissingError("Q1", 404)) is ErrorKind.FATAL
    assert classify_error(RetryBudgetExhausted(3)) is ErrorKind.FATAL
    transient = CaptureError("lagged", kind=ErrorKind.RETRYABLE)
    assert classify_error(transient) is ErrorKind.RETRYABLE
    assert transient.retryable


@pytest.mark.unit
def test_unknown_errors_are_fatal():
    assert classify_error(KeyError("title")) is ErrorKind.FATAL


@pytest.mark.unit
def test_api_error_codes():
    assert classify_api_error("maxlag") is ErrorKind.RETRYABLE
    assert classify_api_error("ratelimited") is ErrorKind.RETRYABLE
    assert classify_api_error("internal_api_error_DBQueryError") is ErrorKind.RETRYABLE
    assert classify_api_error("badcontinue") is ErrorKind.FATAL
    assert classify_api_error("") is ErrorKind.FATAL
