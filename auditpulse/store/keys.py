"""
Store key builders.

Every session uses two keys:
    {prefix}:session:{org}:{type}:{name}:{actor}   list of changes (long safety TTL)
    {prefix}:timer:{org}:{type}:{name}:{actor}     sliding TTL W, empty value

The timer's expiry announces the end of the window; the body survives it so
the expiry handler can still read what was buffered. Thread references live
at {prefix}:thread:{org}:{name}:{actor}.

Components are percent-encoded so names containing ':' round-trip.
"""

from typing import Optional
from urllib.parse import quote, unquote

from auditpulse.schemas import CoalescingKey

SESSION_NS = "session"
TIMER_NS = "timer"
THREAD_NS = "thread"


def _encode(*parts: str) -> str:
    return ":".join(quote(p, safe="") for p in parts)


def _components(key: CoalescingKey) -> str:
    return _encode(key.org_id, key.metadata_type, key.metadata_name, key.actor_id)


def session_key(prefix: str, key: CoalescingKey) -> str:
    return f"{prefix}:{SESSION_NS}:{_components(key)}"


def timer_key(prefix: str, key: CoalescingKey) -> str:
    return f"{prefix}:{TIMER_NS}:{_components(key)}"


def thread_key(prefix: str, key: CoalescingKey) -> str:
    return f"{prefix}:{THREAD_NS}:{_encode(key.org_id, key.metadata_name, key.actor_id)}"


def parse_key(prefix: str, namespace: str, raw: str) -> Optional[CoalescingKey]:
    """Inverse of session_key / timer_key. None for foreign or malformed keys."""
    head = f"{prefix}:{namespace}:"
    if not raw.startswith(head):
        return None
    parts = raw[len(head):].split(":")
    if len(parts) != 4:
        return None
    org_id, metadata_type, metadata_name, actor_id = (unquote(p) for p in parts)
    return CoalescingKey(
        org_id=org_id,
        metadata_type=metadata_type,
        metadata_name=metadata_name,
        actor_id=actor_id,
    )
