import pytest

from conftest import ENDPOINT, RESULT_URL, FakeTransport, convert_json, done
from preview_service.conversion import (
    CancellationToken,
    ContractViolationError,
    ConversionCancelledError,
    ConversionClient,
    ConversionRequest,
    ConversionTimeoutError,
    ProtocolShapeError,
    TransportError,
    TransportResponse,
    poll_until_done,
)
from preview_service.conversion.client import EXCERPT_LIMIT, JobState

REQUEST = ConversionRequest(
    url="http://app.test/files/report.docx",
    filetype="docx",
    title="report.docx",
    key="abc123",
)


def _client(*responses) -> tuple[ConversionClient, FakeTransport]:
    transport = FakeTransport(responses)
    return ConversionClient(transport, ENDPOINT), transport


def test_request_posts_json_payload_with_accept_header():
    client, transport = _client(convert_json(40))
    client.request(REQUEST)

    url, payload, headers = transport.posts[0]
    assert url == ENDPOINT
    assert headers == {"Accept": "application/json"}
    assert payload == {
        "async": True,
        "url": "http://app.test/files/report.docx",
        "outputtype": "pdf",
        "filetype": "docx",
        "title": "report.docx",
        "key": "abc123",
    }


def test_missing_fields_default_to_not_done():
    client, _ = _client(TransportResponse(200, "OK", "application/json", b"{}"))
    status = client.request(REQUEST)
    assert status.completed is False
    assert status.percent == 0
    assert status.result_url is None


def test_completed_response_carries_result_url():
    client, _ = _client(done())
    status = client.request(REQUEST)
    assert status.completed is True
    assert status.percent == 100
    assert status.result_url == RESULT_URL


def test_unknown_fields_are_ignored():
    body = b'{"percent": 70, "endConvert": false, "error": 0, "extra": [1, 2]}'
    client, _ = _client(TransportResponse(200, "OK", "application/json", body))
    assert client.request(REQUEST).percent == 70


def test_end_convert_without_file_url_is_contract_violation():
    client, _ = _client(convert_json(100, True))
    with pytest.raises(ContractViolationError) as err:
        client.request(REQUEST)
    assert err.value.category == "protocol_shape"
    assert err.value.context["endpoint"] == ENDPOINT


def test_non_json_response_is_protocol_failure_with_bounded_excerpt():
    html = b"<html><body>" + b"x" * 2000 + b"</body></html>"
    client, transport = _client(TransportResponse(502, "Bad Gateway", "text/html", html))
    with pytest.raises(ProtocolShapeError) as err:
        client.request(REQUEST)

    ctx = err.value.context
    assert ctx["status_code"] == 502
    assert ctx["reason"] == "Bad Gateway"
    assert ctx["content_type"] == "text/html"
    assert ctx["endpoint"] == ENDPOINT
    assert ctx["payload_url"] == REQUEST.url
    assert len(ctx["body_excerpt"]) == EXCERPT_LIMIT
    assert ctx["body_excerpt"].startswith("<html><body>")
    # One call, no retry.
    assert len(transport.posts) == 1


def test_malformed_json_is_protocol_failure():
    client, _ = _client(TransportResponse(200, "OK", "application/json", b"{not json"))
    with pytest.raises(ProtocolShapeError):
        client.request(REQUEST)


def test_non_object_json_is_protocol_failure():
    client, _ = _client(TransportResponse(200, "OK", "application/json", b"[1, 2]"))
    with pytest.raises(ProtocolShapeError):
        client.request(REQUEST)


def test_non_numeric_percent_is_protocol_failure():
    client, _ = _client(TransportResponse(200, "OK", "application/json", b'{"percent": "soon"}'))
    with pytest.raises(ProtocolShapeError):
        client.request(REQUEST)


def test_poll_stops_on_completion_after_exactly_n_calls():
    client, transport = _client(convert_json(10), convert_json(60), convert_json(90), done())
    job = poll_until_done(client, REQUEST, max_attempts=10, poll_interval=0)

    assert job.state == JobState.COMPLETED
    assert job.polls == 4
    assert job.history == [10, 60, 90, 100]
    assert job.result_url == RESULT_URL
    assert len(transport.posts) == 4
    assert all(p["async"] is True for _, p, _ in transport.posts)


def test_poll_forces_async_even_for_sync_request():
    client, transport = _client(done())
    poll_until_done(client, ConversionRequest("u", "docx", "t", "k", is_async=False), poll_interval=0)
    assert transport.posts[0][1]["async"] is True


def test_poll_timeout_issues_one_sync_probe():
    client, transport = _client(convert_json(30))
    with pytest.raises(ConversionTimeoutError) as err:
        poll_until_done(client, REQUEST, max_attempts=3, poll_interval=0)

    assert len(transport.posts) == 4
    assert [p["async"] for _, p, _ in transport.posts] == [True, True, True, False]
    ctx = err.value.context
    assert ctx["polls"] == 3
    assert ctx["last_percent"] == 30
    assert ctx["probe_percent"] == 30
    assert ctx["probe_end_convert"] is False


def test_poll_timeout_records_probe_failure():
    html = TransportResponse(500, "Internal Server Error", "text/html", b"<h1>boom</h1>")
    client, transport = _client(convert_json(5), convert_json(5), html)
    with pytest.raises(ConversionTimeoutError) as err:
        poll_until_done(client, REQUEST, max_attempts=2, poll_interval=0)
    assert err.value.context["probe_status_code"] == 500
    assert "boom" in err.value.context["probe_body_excerpt"]


def test_poll_timeout_without_probe():
    client, transport = _client(convert_json(30))
    with pytest.raises(ConversionTimeoutError):
        poll_until_done(client, REQUEST, max_attempts=3, poll_interval=0, sync_probe=False)
    assert len(transport.posts) == 3


def test_poll_propagates_client_errors_immediately():
    client, transport = _client(convert_json(10), TransportError("connection refused"))
    with pytest.raises(TransportError):
        poll_until_done(client, REQUEST, max_attempts=5, poll_interval=0)
    assert len(transport.posts) == 2


def test_poll_honours_cancellation_before_first_call():
    token = CancellationToken()
    token.cancel()
    client, transport = _client(done())
    with pytest.raises(ConversionCancelledError):
        poll_until_done(client, REQUEST, poll_interval=0, cancel=token)
    assert transport.posts == []


def test_cancellation_interrupts_poll_wait():
    token = CancellationToken()

    def first():
        token.cancel()
        return convert_json(5)

    client, transport = _client(first, convert_json(10))
    # A long interval would hang the test if the wait were not interruptible.
    with pytest.raises(ConversionCancelledError) as err:
        poll_until_done(client, REQUEST, max_attempts=5, poll_interval=60, cancel=token)
    assert err.value.context["polls"] == 1
    assert len(transport.posts) == 1
