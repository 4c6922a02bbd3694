"""
Path-keyed event dispatch

A PathPattern matches the tail of a StructuralPath segment by segment,
with "*" standing for any single key or index:

    "example_sentences/*/english"  matches  example_sentences/3/english
    "english"                      matches  any path whose last key is english

EventDispatcher fans every parser event out to its subscriptions in
registration order. Each subscription is a pure predicate over the event
plus a sink; subscriptions never see each other's decisions.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Sequence

from util.streaming_parser import (
    ParseEvent,
    StringResolved,
    StructuralPath,
    ValueCommitted,
)

logger = logging.getLogger("lingo.dispatcher")

WILDCARD = "*"


class PathPattern:
    """Suffix pattern over structural paths."""

    def __init__(self, pattern: str):
        self.pattern = pattern
        self.segments = [part for part in pattern.strip("/").split("/") if part]
        if not self.segments:
            raise ValueError(f"empty path pattern: {pattern!r}")

    def matches(self, path: StructuralPath) -> bool:
        if len(path) < len(self.segments):
            return False
        tail = tuple(path)[len(path) - len(self.segments):]
        for want, have in zip(self.segments, tail):
            if want != WILDCARD and want != str(have):
                return False
        return True

    def __repr__(self) -> str:
        return f"PathPattern({self.pattern!r})"


def compile_patterns(patterns: Iterable[str]) -> List[PathPattern]:
    return [PathPattern(p) for p in patterns]


def is_rendered(event: ParseEvent, patterns: Sequence[PathPattern]) -> bool:
    """Client-visible: string growth and finished non-string scalars at a rendered path."""
    if isinstance(event, StringResolved):
        return False
    if isinstance(event, ValueCommitted) and isinstance(event.value, (dict, list)):
        return False
    return any(p.matches(event.path) for p in patterns)


def is_audio_trigger(event: ParseEvent, pattern: PathPattern) -> bool:
    """Completed string at the configured trigger field."""
    return isinstance(event, StringResolved) and pattern.matches(event.path)


@dataclass
class Subscription:
    name: str
    predicate: Callable[[ParseEvent], bool]
    sink: Callable[[ParseEvent], None]


class EventDispatcher:
    """Fans parser events out to independent subscriptions."""

    def __init__(self, subscriptions: Sequence[Subscription] = ()):
        self._subscriptions: List[Subscription] = list(subscriptions)
        self.dispatched = 0

    def subscribe(self, name: str, predicate: Callable[[ParseEvent], bool], sink: Callable[[ParseEvent], None]) -> None:
        self._subscriptions.append(Subscription(name, predicate, sink))

    def dispatch(self, event: ParseEvent) -> None:
        self.dispatched += 1
        for subscription in self._subscriptions:
            if subscription.predicate(event):
                subscription.sink(event)

    def dispatch_all(self, events: Iterable[ParseEvent]) -> int:
        count = 0
        for event in events:
            self.dispatch(event)
            count += 1
        return count


def build_dispatcher(
    rendered_fields: Iterable[str],
    audio_trigger_field: str,
    on_rendered: Callable[[ParseEvent], None],
    on_audio_trigger: Callable[[ParseEvent], None],
) -> EventDispatcher:
    """Dispatcher with the two standard routes: client rendering first, then audio."""
    rendered = compile_patterns(rendered_fields)
    trigger = PathPattern(audio_trigger_field)
    dispatcher = EventDispatcher()
    dispatcher.subscribe("render", lambda event: is_rendered(event, rendered), on_rendered)
    dispatcher.subscribe("audio", lambda event: is_audio_trigger(event, trigger), on_audio_trigger)
    return dispatcher
