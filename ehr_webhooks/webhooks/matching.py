"""
Event pattern matching for endpoint subscriptions.

Patterns follow the "ResourceType.action" shape of event types. Either
segment may be "*", so "Patient.*" matches every Patient event and
"*.delete" matches deletes of any resource. Anything that is not exactly
two segments only matches by string equality.
"""

from typing import Iterable

from ehr_webhooks.types.webhooks import WebhookEndpoint

WILDCARD = "*"


def pattern_matches(pattern: str, event_type: str) -> bool:
    """
    Check whether a subscription pattern matches an event type.

    Args:
        pattern: Subscribed pattern, e.g. "Patient.*"
        event_type: Event type, e.g. "Patient.create"

    Returns:
        True if the pattern matches (case-sensitive)
    """
    if pattern == event_type:
        return True

    pattern_parts = pattern.split(".")
    event_parts = event_type.split(".")
    if len(pattern_parts) != 2 or len(event_parts) != 2:
        return False

    return all(
        expected == WILDCARD or expected == actual
        for expected, actual in zip(pattern_parts, event_parts)
    )


def matches_any(patterns: Iterable[str], event_type: str) -> bool:
    return any(pattern_matches(pattern, event_type) for pattern in patterns)


def endpoint_matches(endpoint: WebhookEndpoint, event_type: str) -> bool:
    """Check whether any of an endpoint's patterns matches the event type."""
    return matches_any(endpoint.events, event_type)
