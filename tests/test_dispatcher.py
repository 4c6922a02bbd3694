import pytest

from core.dispatcher import (
    EventDispatcher,
    PathPattern,
    build_dispatcher,
    is_audio_trigger,
    is_rendered,
)
from util.streaming_parser import StringDelta, StringResolved, StructuralPath, ValueCommitted

EN = StructuralPath(("example_sentences", 1, "english"))
ZH = StructuralPath(("example_sentences", 1, "chinese"))


@pytest.mark.parametrize(
    "pattern, uri, expected",
    [
        ("example_sentences/*/english", "example_sentences/1/english", True),
        ("example_sentences/*/english", "example_sentences/1/chinese", False),
        ("english", "example_sentences/1/english", True),
        ("*/english", "english", False),
        ("example_sentences/1/english", "example_sentences/1/english", True),
        ("example_sentences/2/english", "example_sentences/1/english", False),
        ("/english/", "a/english", True),
    ],
)
def test_path_pattern_matches_suffix(pattern, uri, expected):
    assert PathPattern(pattern).matches(StructuralPath.from_uri(uri)) is expected


def test_empty_pattern_rejected():
    with pytest.raises(ValueError):
        PathPattern("/")


def test_rendered_predicate():
    patterns = [PathPattern("example_sentences/*/english"), PathPattern("count")]
    assert is_rendered(StringDelta(EN, "Hi"), patterns)
    assert not is_rendered(StringResolved(EN, "Hi"), patterns)
    assert not is_rendered(StringDelta(ZH, "嗨"), patterns)
    assert is_rendered(ValueCommitted(StructuralPath(("count",)), 3), patterns)
    assert not is_rendered(ValueCommitted(StructuralPath(("count",)), {"x": 1}), patterns)


def test_audio_trigger_predicate():
    pattern = PathPattern("example_sentences/*/english")
    assert is_audio_trigger(StringResolved(EN, "Hi"), pattern)
    assert not is_audio_trigger(StringDelta(EN, "Hi"), pattern)
    assert not is_audio_trigger(StringResolved(ZH, "嗨"), pattern)


def test_every_matching_subscription_sees_the_event_in_order():
    seen = []
    dispatcher = EventDispatcher()
    dispatcher.subscribe("first", lambda e: True, lambda e: seen.append(("first", e)))
    dispatcher.subscribe("never", lambda e: False, lambda e: seen.append(("never", e)))
    dispatcher.subscribe("second", lambda e: True, lambda e: seen.append(("second", e)))

    event = StringDelta(EN, "H")
    assert dispatcher.dispatch_all([event]) == 1
    assert seen == [("first", event), ("second", event)]
    assert dispatcher.dispatched == 1


def test_standard_routes():
    rendered, triggered = [], []
    dispatcher = build_dispatcher(
        ["example_sentences/*/english", "example_sentences/*/chinese"],
        "example_sentences/*/english",
        on_rendered=rendered.append,
        on_audio_trigger=triggered.append,
    )
    events = [
        StringDelta(EN, "Hi"),
        StringResolved(EN, "Hi"),
        StringDelta(ZH, "嗨"),
        StringResolved(ZH, "嗨"),
        ValueCommitted(StructuralPath(("example_sentences", 1)), {"english": "Hi", "chinese": "嗨"}),
    ]
    assert dispatcher.dispatch_all(events) == 5
    assert rendered == [events[0], events[2]]
    assert triggered == [events[1]]
