import asyncio
import base64
import json

import httpx
import pytest

from core.config import SynthesisConfig
from core.errors import SynthesisFailure
from core.multiplexer import OutputFrame
from core.synthesis import SpeechSynthesizer, SynthesisOrchestrator
from util.streaming_parser import StringResolved, StructuralPath

EN0 = StructuralPath(("example_sentences", 0, "english"))
EN1 = StructuralPath(("example_sentences", 1, "english"))


class FakeSynth:
    """Records calls; optional per-text delay, failure or gate."""

    def __init__(self, delays=None, fail=(), gate=None):
        self.calls = []
        self.delays = delays or {}
        self.fail = set(fail)
        self.gate = gate
        self.active = 0
        self.peak = 0

    async def __call__(self, text):
        self.calls.append(text)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(self.delays.get(text, 0))
            if text in self.fail:
                raise SynthesisFailure(f"voice unavailable for {text!r}")
            return base64.b64encode(text.encode()).decode()
        finally:
            self.active -= 1


def _audio(text, path):
    return OutputFrame.data(path.with_last("audio"), base64.b64encode(text.encode()).decode(), source="audio")


@pytest.mark.asyncio
async def test_resolved_string_becomes_an_audio_frame():
    frames = []
    synth = FakeSynth()
    orchestrator = SynthesisOrchestrator(synth, frames.append)

    pending = orchestrator.on_resolved(StringResolved(EN0, "Hi!"))
    assert pending.path == EN0
    assert orchestrator.has_pending()

    await orchestrator.settle_all()
    assert frames == [_audio("Hi!", EN0)]
    assert frames[0].payload["uri"] == "example_sentences/0/audio"
    assert not orchestrator.has_pending()
    assert (orchestrator.started, orchestrator.succeeded, orchestrator.failed) == (1, 1, 0)


@pytest.mark.asyncio
async def test_at_most_one_task_per_path():
    synth = FakeSynth()
    orchestrator = SynthesisOrchestrator(synth, lambda frame: None)

    assert orchestrator.on_resolved(StringResolved(EN0, "Hi!")) is not None
    assert orchestrator.on_resolved(StringResolved(EN0, "Hi!")) is None
    await orchestrator.settle_all()
    assert synth.calls == ["Hi!"]


@pytest.mark.asyncio
async def test_blank_strings_are_not_synthesized():
    synth = FakeSynth()
    orchestrator = SynthesisOrchestrator(synth, lambda frame: None)
    assert orchestrator.on_resolved(StringResolved(EN0, "   ")) is None
    await orchestrator.settle_all()
    assert synth.calls == []


@pytest.mark.asyncio
async def test_failure_only_drops_its_own_frame():
    frames, errors = [], []
    synth = FakeSynth(fail={"bad"})
    orchestrator = SynthesisOrchestrator(synth, frames.append, on_error=errors.append)

    orchestrator.on_resolved(StringResolved(EN0, "bad"))
    orchestrator.on_resolved(StringResolved(EN1, "good"))
    await orchestrator.settle_all()

    assert frames == [_audio("good", EN1)]
    assert len(errors) == 1
    assert isinstance(errors[0], SynthesisFailure)
    assert errors[0].path == EN0
    assert orchestrator.failed == 1


@pytest.mark.asyncio
async def test_unexpected_exceptions_are_wrapped():
    errors = []

    async def broken(text):
        raise RuntimeError("boom")

    orchestrator = SynthesisOrchestrator(broken, lambda frame: None, on_error=errors.append)
    orchestrator.on_resolved(StringResolved(EN0, "Hi"))
    await orchestrator.settle_all()
    assert isinstance(errors[0], SynthesisFailure)
    assert "RuntimeError" in str(errors[0])


@pytest.mark.asyncio
async def test_frames_follow_completion_order():
    frames = []
    synth = FakeSynth(delays={"slow": 0.05, "fast": 0})
    orchestrator = SynthesisOrchestrator(synth, frames.append)

    orchestrator.on_resolved(StringResolved(EN0, "slow"))
    orchestrator.on_resolved(StringResolved(EN1, "fast"))
    await orchestrator.settle_all()
    assert [f.payload["uri"] for f in frames] == ["example_sentences/1/audio", "example_sentences/0/audio"]


@pytest.mark.asyncio
async def test_settle_all_waits_for_every_task():
    gate = asyncio.Event()
    synth = FakeSynth(gate=gate)
    orchestrator = SynthesisOrchestrator(synth, lambda frame: None)
    orchestrator.on_resolved(StringResolved(EN0, "a"))
    orchestrator.on_resolved(StringResolved(EN1, "b"))

    waiter = asyncio.ensure_future(orchestrator.settle_all())
    await asyncio.sleep(0.01)
    assert not waiter.done()
    assert len(orchestrator.pending_paths) == 2

    gate.set()
    await asyncio.wait_for(waiter, 1)
    assert orchestrator.succeeded == 2


@pytest.mark.asyncio
async def test_cancelling_the_waiter_leaves_tasks_running():
    gate = asyncio.Event()
    synth = FakeSynth(gate=gate)
    orchestrator = SynthesisOrchestrator(synth, lambda frame: None)
    orchestrator.on_resolved(StringResolved(EN0, "a"))

    waiter = asyncio.ensure_future(orchestrator.settle_all())
    await asyncio.sleep(0)
    waiter.cancel()
    await asyncio.sleep(0)

    gate.set()
    await orchestrator.settle_all()
    assert orchestrator.succeeded == 1


@pytest.mark.asyncio
async def test_discarded_results_are_not_emitted():
    frames = []
    gate = asyncio.Event()
    orchestrator = SynthesisOrchestrator(FakeSynth(gate=gate), frames.append)
    orchestrator.on_resolved(StringResolved(EN0, "Hi"))

    orchestrator.discard_results()
    gate.set()
    await orchestrator.settle_all()
    assert frames == []
    assert orchestrator.succeeded == 1


@pytest.mark.asyncio
async def test_concurrency_cap():
    synth = FakeSynth(delays={"a": 0.01, "b": 0.01, "c": 0.01})
    orchestrator = SynthesisOrchestrator(synth, lambda frame: None, max_concurrency=1)
    for i, text in enumerate("abc"):
        orchestrator.on_resolved(StringResolved(StructuralPath(("example_sentences", i, "english")), text))
    await orchestrator.settle_all()
    assert synth.peak == 1
    assert orchestrator.succeeded == 3


# ---------- speech endpoint client ----------

@pytest.mark.asyncio
async def test_speech_client_returns_base64_audio():
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        captured["auth"] = request.headers.get("authorization")
        return httpx.Response(200, content=b"ID3audio", headers={"content-type": "audio/mpeg"})

    settings = SynthesisConfig(endpoint="https://tts.test/v1/audio/speech", voice="nova")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        payload = await SpeechSynthesizer(http_client, settings, "sk-tts").synthesize("Hi!")

    assert base64.b64decode(payload) == b"ID3audio"
    assert captured["body"] == {"model": "tts-1", "input": "Hi!", "voice": "nova", "response_format": "mp3"}
    assert captured["auth"] == "Bearer sk-tts"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="overloaded"),
        httpx.Response(200, content=b""),
    ],
)
async def test_speech_client_failures(response):
    settings = SynthesisConfig(endpoint="https://tts.test/v1/audio/speech")
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response)) as http_client:
        with pytest.raises(SynthesisFailure):
            await SpeechSynthesizer(http_client, settings).synthesize("Hi!")


@pytest.mark.asyncio
async def test_speech_client_transport_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out")

    settings = SynthesisConfig(endpoint="https://tts.test/v1/audio/speech")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        with pytest.raises(SynthesisFailure, match="ReadTimeout"):
            await SpeechSynthesizer(http_client, settings).synthesize("Hi!")
