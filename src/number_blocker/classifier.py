"""
Response classification for portal action pages.

The portal reports the result of a block or release request only as prose
inside an HTML page. This module turns such a page into an OutcomeAction by
evaluating an ordered table of rules; the first matching rule wins. The table
is data, so it can be replaced per deployment and tested without any
networking.

It also holds the small scrapers for the form tokens the multi-step workflow
needs (continuation token, action token, "no records" marker).
"""

import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .enums import OutcomeAction

CONTINUATION_TOKEN_FIELD = "org.apache.struts.taglib.html.TOKEN"

_CONTINUATION_TOKEN_PATTERN = re.compile(
    r'name="org\.apache\.struts\.taglib\.html\.TOKEN" value="([^"]+)"'
)
_ACTION_TOKEN_PATTERN = re.compile(r'value="([^"]+)"')

NO_RECORDS_MARKER = "No Records to Display"


@dataclass(frozen=True)
class ClassificationRule:
    """A single (predicate, action) pair of the classification table."""

    name: str
    predicate: Callable[[str], bool]
    action: OutcomeAction


def contains_any(*phrases: str) -> Callable[[str], bool]:
    """Case-sensitive match of any phrase."""
    def predicate(body: str) -> bool:
        return any(phrase in body for phrase in phrases)
    return predicate


def contains_any_lower(*phrases: str) -> Callable[[str], bool]:
    """Case-insensitive match of any phrase."""
    lowered = [phrase.lower() for phrase in phrases]

    def predicate(body: str) -> bool:
        text = body.lower()
        return any(phrase in text for phrase in lowered)
    return predicate


def contains_pair_lower(first: str, *seconds: str) -> Callable[[str], bool]:
    """Case-insensitive match of `first` together with any of `seconds`."""
    first = first.lower()
    lowered = [phrase.lower() for phrase in seconds]

    def predicate(body: str) -> bool:
        text = body.lower()
        return first in text and any(phrase in text for phrase in lowered)
    return predicate


# Evaluated top to bottom. Explicit portal phrases come before generic
# keywords because e.g. the success page may contain the word "limit".
DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        "blocked", contains_any("Following Cell Number(s) are Blocked"),
        OutcomeAction.BLOCKED,
    ),
    ClassificationRule(
        "unblocked", contains_any("unblocked successfully"),
        OutcomeAction.UNBLOCKED,
    ),
    ClassificationRule(
        "exceeded_limit", contains_any("exceeded blocking count"),
        OutcomeAction.EXCEEDED_LIMIT,
    ),
    ClassificationRule(
        "already_blocked", contains_any("already blocked"),
        OutcomeAction.ALREADY_BLOCKED,
    ),
    ClassificationRule(
        "error", contains_any("error", "Error"),
        OutcomeAction.ERROR,
    ),
    ClassificationRule(
        "session_expired", contains_pair_lower("session", "expired", "timeout"),
        OutcomeAction.SESSION_EXPIRED,
    ),
    ClassificationRule(
        "timeout", contains_any_lower("timeout", "time out"),
        OutcomeAction.TIMEOUT,
    ),
    ClassificationRule(
        "rate_limited", contains_any_lower("limit", "exceeded"),
        OutcomeAction.RATE_LIMITED,
    ),
    ClassificationRule(
        "maintenance", contains_any_lower("maintenance", "unavailable"),
        OutcomeAction.MAINTENANCE,
    ),
)

_MESSAGES = {
    OutcomeAction.BLOCKED: "Number {identifier} blocked successfully",
    OutcomeAction.UNBLOCKED: "Number {identifier} unblocked successfully",
    OutcomeAction.EXCEEDED_LIMIT: "Number {identifier} has exceeded blocking count",
    OutcomeAction.ALREADY_BLOCKED: "Number {identifier} is already blocked",
    OutcomeAction.ERROR: "Error blocking number {identifier}",
    OutcomeAction.SESSION_EXPIRED: "Session expired for {identifier}",
    OutcomeAction.TIMEOUT: "Request timeout for {identifier}",
    OutcomeAction.RATE_LIMITED: "Rate limit exceeded for {identifier}",
    OutcomeAction.MAINTENANCE: "System maintenance for {identifier}",
    OutcomeAction.NO_RECORDS: "Number {identifier} not found in system",
    OutcomeAction.UNKNOWN: "Unknown response pattern for {identifier}",
}


class ResponseClassifier:
    """Maps an action response body onto an OutcomeAction."""

    def __init__(self, rules: Optional[Sequence[ClassificationRule]] = None) -> None:
        self._rules = tuple(rules) if rules is not None else DEFAULT_RULES

    @property
    def rules(self) -> tuple[ClassificationRule, ...]:
        return self._rules

    def classify(self, body: str) -> OutcomeAction:
        for rule in self._rules:
            if rule.predicate(body):
                return rule.action
        return OutcomeAction.UNKNOWN

    @staticmethod
    def message_for(action: OutcomeAction, identifier: str) -> str:
        return _MESSAGES[action].format(identifier=identifier)


def extract_continuation_token(body: str) -> str:
    """Return the anti-replay form token embedded in a page, or ''."""
    match = _CONTINUATION_TOKEN_PATTERN.search(body or "")
    return match.group(1) if match else ""


def extract_action_token(body: str) -> Optional[str]:
    """Return the first input value of a token page, or None."""
    match = _ACTION_TOKEN_PATTERN.search(body or "")
    return match.group(1) if match else None


def has_no_records(body: str) -> bool:
    return NO_RECORDS_MARKER in body
