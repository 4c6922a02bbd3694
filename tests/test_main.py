import base64

from fastapi.testclient import TestClient

from core.errors import UpstreamConnectionError
from core.upstream import ContentFragment
from main import app, get_synthesizer, get_upstream_client

client = TestClient(app)


class FakeUpstream:
    def __init__(self, texts, error=None):
        self.texts = texts
        self.error = error
        self.questions = []

    async def stream_fragments(self, question, request_id="", on_error=None):
        self.questions.append(question)
        for seq, text in enumerate(self.texts):
            yield ContentFragment(seq, text)
        if self.error is not None:
            raise self.error


class FakeSynthesizer:
    def __init__(self):
        self.calls = []

    async def synthesize(self, text):
        self.calls.append(text)
        return base64.b64encode(b"audio:" + text.encode()).decode()


def _override(upstream, synthesizer):
    app.dependency_overrides[get_upstream_client] = lambda: upstream
    app.dependency_overrides[get_synthesizer] = lambda: synthesizer


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_stream_relays_text_and_audio():
    upstream = FakeUpstream(['{"example_sentences":[{"english":"H', 'i!","chinese":"嗨', '！"}]}'])
    synthesizer = FakeSynthesizer()
    _override(upstream, synthesizer)
    try:
        response = client.get("/stream", params={"question": "greetings"})
    finally:
        app.dependency_overrides = {}

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"

    body = response.text
    assert body.startswith('data: {"uri": "example_sentences/0/english", "delta": "H"}\n\n')
    assert '"uri": "example_sentences/0/audio"' in body
    assert body.endswith("event: end\ndata: [DONE]\n\n")
    assert body.count("[DONE]") == 1
    assert upstream.questions == ["greetings"]
    assert synthesizer.calls == ["Hi!"]


def test_stream_upstream_failure():
    upstream = FakeUpstream(['{"example_sentences":['], error=UpstreamConnectionError("Upstream Error 502", 502))
    _override(upstream, FakeSynthesizer())
    try:
        response = client.get("/stream", params={"question": "weather"})
    finally:
        app.dependency_overrides = {}

    assert response.status_code == 200
    assert response.text == 'data: {"error": {"message": "Error fetching from upstream model"}}\n\n'


def test_stream_requires_a_question():
    upstream = FakeUpstream(['{"example_sentences": []}'])
    _override(upstream, FakeSynthesizer())
    try:
        assert client.get("/stream").status_code == 422
        assert client.get("/stream", params={"question": ""}).status_code == 422
    finally:
        app.dependency_overrides = {}

    assert upstream.questions == []


def test_unknown_route():
    response = client.get("/nope")
    assert response.status_code == 404
    assert response.json() == {"detail": "Not Found"}
