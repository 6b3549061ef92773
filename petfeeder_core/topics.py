"""Topic builders and parser for the per-appliance bus topics.

Layout: ``<namespace>/<identity>/event`` (appliance to listeners) and
``<namespace>/<identity>/command`` (listeners to appliance). The namespace
may itself contain ``/``.
"""

from __future__ import annotations

from typing import NamedTuple

EVENT_CHANNEL = "event"
COMMAND_CHANNEL = "command"
CHANNELS = (EVENT_CHANNEL, COMMAND_CHANNEL)

DEFAULT_NAMESPACE = "petfeeder"

_WILDCARDS = ("+", "#")


class TopicParts(NamedTuple):
    namespace: str
    identity: str
    channel: str


def _check_identity(identity: str) -> str:
    ident = (identity or "").strip()
    if not ident or "/" in ident or any(w in ident for w in _WILDCARDS):
        raise ValueError(f"Invalid appliance identity for topic use: {identity!r}")
    return ident


def event_topic(identity: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/{_check_identity(identity)}/{EVENT_CHANNEL}"


def command_topic(identity: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/{_check_identity(identity)}/{COMMAND_CHANNEL}"


def wildcard_event_topic(namespace: str = DEFAULT_NAMESPACE) -> str:
    """Subscription filter covering every appliance's event topic."""
    return f"{namespace}/+/{EVENT_CHANNEL}"


def parse_topic(topic: str, namespace: str | None = None) -> TopicParts | None:
    """Split a concrete topic into (namespace, identity, channel).

    The namespace may span several segments (``site1/petfeeder``); the last
    two segments are always identity and channel. When ``namespace`` is
    given the topic must sit directly under it.

    Total: empty segments, wildcards or an unknown channel yield None.
    """
    if not isinstance(topic, str):
        return None
    if namespace is not None:
        prefix = f"{namespace}/"
        if not topic.startswith(prefix):
            return None
        rest = topic[len(prefix):].split("/")
        if len(rest) != 2:
            return None
        ns = namespace
        identity, channel = rest
    else:
        parts = topic.rsplit("/", 2)
        if len(parts) != 3:
            return None
        ns, identity, channel = parts
    if not identity or channel not in CHANNELS:
        return None
    segments = ns.split("/") + [identity]
    if not all(segments) or any(w in seg for seg in segments for w in _WILDCARDS):
        return None
    return TopicParts(ns, identity, channel)


__all__ = [
    "CHANNELS",
    "COMMAND_CHANNEL",
    "DEFAULT_NAMESPACE",
    "EVENT_CHANNEL",
    "TopicParts",
    "command_topic",
    "event_topic",
    "parse_topic",
    "wildcard_event_topic",
]
