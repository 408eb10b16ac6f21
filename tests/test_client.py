import pytest
import requests

from lostfound.client import ApiError, LostFoundClient, PollTimeout


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = str(self._payload)

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    """Replays queued responses; an exception in the queue is raised instead."""

    def __init__(self, responses=()):
        self.responses = list(responses)
        self.headers = {}
        self.calls = []

    def _next(self):
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self._next()

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return self._next()


def status(state, exists=True):
    return FakeResponse(200, {"exists": exists, "status": state, "message": ""})


def make_client(responses):
    delays = []
    session = FakeSession(responses)
    client = LostFoundClient("http://lf.test/", token="abc", session=session, sleep=delays.append)
    return client, session, delays


def test_token_header():
    _, session, _ = make_client([])
    assert session.headers["Authorization"] == "Bearer abc"


def test_poll_until_indexed_with_backoff():
    client, session, delays = make_client([status("pending"), status("processing"), status("processing"),
                                           status("indexed")])

    result = client.wait_until_indexed("item1", initial_delay=2, max_delay=4, backoff=1.5)

    assert result["status"] == "indexed"
    assert delays == [2, 3, 4]
    assert session.calls[0][1] == "http://lf.test/status"
    assert session.calls[0][2]["params"] == {"imageId": "item1"}


def test_poll_stops_on_failure():
    client, _, delays = make_client([status("processing"), status("failed", exists=False)])
    assert client.wait_until_indexed("item1")["status"] == "failed"
    assert len(delays) == 1


def test_poll_stops_when_unknown():
    client, _, _ = make_client([FakeResponse(404, {"exists": False, "status": "not_found", "message": "gone"})])
    assert client.wait_until_indexed("item1")["status"] == "not_found"


def test_transport_errors_are_retried():
    client, _, delays = make_client([requests.ConnectionError("reset"), FakeResponse(502),
                                     status("indexed")])
    assert client.wait_until_indexed("item1")["status"] == "indexed"
    assert len(delays) == 2


def test_poll_timeout():
    client, session, delays = make_client([status("processing")] * 3)
    with pytest.raises(PollTimeout):
        client.wait_until_indexed("item1", max_attempts=3)
    assert len(session.calls) == 3
    assert len(delays) == 2


def test_api_errors_carry_status():
    client, _, _ = make_client([FakeResponse(403, {"error": "You can only delete items you submitted"})])
    with pytest.raises(ApiError) as excinfo:
        client.delete("item1")
    assert excinfo.value.status_code == 403
    assert "only delete" in excinfo.value.message


def test_search_text_body():
    client, session, _ = make_client([FakeResponse(200, {"items": [{"id": "a"}]})])
    assert client.search_text("blue backpack", min_similarity=0.5, top_k="all") == [{"id": "a"}]
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "http://lf.test/search/text")
    assert kwargs["json"] == {"query": "blue backpack", "minSimilarity": 0.5, "topK": "all"}
