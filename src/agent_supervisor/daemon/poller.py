"""Poll mode: watch the repository events feed and launch on relevant activity."""

import logging
from pathlib import Path
from typing import Callable, List

from pydantic import ValidationError

from ..core.state import utc_now_iso
from ..utils.atomic_io import PRIVATE_FILE_MODE, atomic_write_model
from .events import GitHubEvent, GitHubEventSource, is_relevant_event, new_events
from .models import DaemonError, PollCursor
from .shutdown import ShutdownToken

logger = logging.getLogger(__name__)


def load_cursor(path: Path) -> PollCursor:
    """Missing or unreadable cursor files start from an empty cursor."""
    if not path.exists():
        return PollCursor()
    try:
        return PollCursor.model_validate_json(path.read_text())
    except (OSError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable poll cursor {path}: {e}")
        return PollCursor()


def save_cursor(path: Path, cursor: PollCursor) -> None:
    atomic_write_model(path, cursor, mode=PRIVATE_FILE_MODE)


class EventPoller:
    """
    Poll loop for one team.

    Each cycle resolves the repository, reads its newest-first event feed,
    keeps the events newer than the cursor and triggers a launch if any of
    them is relevant. The cursor then advances to the newest event id.
    """

    def __init__(
        self,
        source: GitHubEventSource,
        resolve_repo: Callable[[], str],
        trigger: Callable[[str], None],
        cursor_path: Path,
        interval: int,
        shutdown: ShutdownToken,
    ):
        self.source = source
        self.resolve_repo = resolve_repo
        self.trigger = trigger
        self.cursor_path = Path(cursor_path)
        self.interval = interval
        self.shutdown = shutdown

    def poll_once(self) -> List[GitHubEvent]:
        """
        Run a single cycle.

        Returns:
            The relevant events that were new in this cycle

        Raises:
            DaemonError: If no repository is configured
            github.GithubException: If the events API call fails
        """
        repo_name = self.resolve_repo()
        if not repo_name:
            raise DaemonError("No github_repo configured for team; cannot poll events")

        cursor = load_cursor(self.cursor_path)
        events = self.source.fetch(repo_name)
        fresh = new_events(events, cursor.last_event_id)
        relevant = [e for e in fresh if is_relevant_event(e.type)]

        if relevant:
            kinds = ", ".join(sorted({e.type for e in relevant}))
            logger.info(f"Found {len(relevant)} relevant event(s) in {repo_name}: {kinds}")
            self.trigger(f"{len(relevant)} new event(s)")

        if events:
            cursor.last_event_id = events[0].id
        cursor.last_poll_at = utc_now_iso()
        save_cursor(self.cursor_path, cursor)
        return relevant

    def run(self) -> None:
        logger.info(f"Polling every {self.interval}s")
        while not self.shutdown.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Poll cycle failed: {e}")
            self.shutdown.sleep(self.interval)
        logger.info("Stopping poll loop")
