"""GitHub event classification, webhook signatures and the events feed."""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from itertools import takewhile
from typing import Iterable, List, Optional

from github import Github

logger = logging.getLogger(__name__)

# Webhook names; the events API reports the same kinds as PascalCase + "Event"
RELEVANT_EVENTS = ("issues", "issue_comment", "pull_request")

EVENT_HEADER = "X-GitHub-Event"
SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="


def is_relevant_event(event_type: str) -> bool:
    """True for issue, issue comment and pull request events in either naming style.

    >>> is_relevant_event("issue_comment"), is_relevant_event("IssueCommentEvent")
    (True, True)
    """
    normalized = event_type.lower()
    for name in RELEVANT_EVENTS:
        compact = name.replace("_", "")
        if normalized in (name, compact, compact + "event"):
            return True
    return False


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def validate_signature(secret: str, body: bytes, header: Optional[str]) -> bool:
    """Check a ``sha256=<hex>`` HMAC signature header against the raw body."""
    if not header or not header.startswith(SIGNATURE_PREFIX):
        return False
    try:
        provided = bytes.fromhex(header[len(SIGNATURE_PREFIX):])
    except ValueError:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return hmac.compare_digest(expected, provided)


@dataclass(frozen=True)
class GitHubEvent:
    id: str
    type: str


def new_events(events: Iterable[GitHubEvent], last_event_id: Optional[str]) -> List[GitHubEvent]:
    """Events from a newest-first feed that are newer than ``last_event_id``."""
    if last_event_id is None:
        return list(events)
    return list(takewhile(lambda e: e.id != last_event_id, events))


class GitHubEventSource:
    """Reads a repository's recent events, newest first."""

    def __init__(self, token: str, max_events: int = 100, client: Optional[Github] = None):
        self.gh = client or Github(token)
        self.max_events = max_events

    def fetch(self, repo_name: str) -> List[GitHubEvent]:
        repo = self.gh.get_repo(repo_name)
        events: List[GitHubEvent] = []
        for event in repo.get_events():
            events.append(GitHubEvent(id=str(event.id), type=event.type))
            if len(events) >= self.max_events:
                break
        return events
