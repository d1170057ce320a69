"""Translate technical errors to user-friendly messages."""

import re
from dataclasses import dataclass
from typing import List

from rich.markup import escape


@dataclass
class UserFriendlyError:
    """User-friendly error representation."""
    original_error: Exception
    title: str
    explanation: str
    actions: List[str]
    show_technical: bool = False


class ErrorTranslator:
    """Translate technical errors to user-friendly messages."""

    ERROR_PATTERNS = {
        # Config errors
        r"No teams configured": {
            "title": "Supervisor is not configured",
            "explanation": "No configuration file was found, so there are no teams to operate on.",
            "actions": [
                "Create the config file with a workzone and a teams list",
                "Or point at an existing one: supervisor --config <path> ...",
            ],
        },
        r"No default team set|Team '.*' not found": {
            "title": "Unknown team",
            "explanation": "The command could not work out which team to operate on.",
            "actions": [
                "Pass the team explicitly: -t <team>",
                "Or set default_team in the config file",
            ],
        },
        r"No GH token configured": {
            "title": "GitHub token missing",
            "explanation": "Workers and the poll daemon need a GitHub token for the team.",
            "actions": [
                "Add credentials.gh_token for the team in the config file",
                "Tokens can reference environment variables: gh_token: ${GH_TOKEN}",
            ],
        },

        # Runtime state
        r"StateCorruptError": {
            "title": "Runtime state file is corrupt",
            "explanation": "The supervisor could not read its record of running workers and refuses to guess.",
            "actions": [
                "Inspect the state file mentioned below",
                "Stop any stray worker processes by hand, then delete the file",
            ],
            "show_technical": True,
        },

        # Daemon lifecycle
        r"Daemon already running": {
            "title": "Daemon already running",
            "explanation": "Only one daemon per team can run at a time.",
            "actions": [
                "Check it: supervisor daemon status",
                "Restart it: supervisor daemon stop, then supervisor daemon start",
            ],
        },
        r"Daemon not running": {
            "title": "Daemon not running",
            "explanation": "There is no daemon PID file for this team.",
            "actions": ["Start one: supervisor daemon start"],
        },
        r"Daemon exited immediately|Daemon did not become ready": {
            "title": "Daemon failed to start",
            "explanation": "The daemon process exited, or never started serving, after being launched.",
            "actions": [
                "Read the daemon log mentioned below",
                "Check the webhook port is free, or try --mode poll",
            ],
            "show_technical": True,
        },

        # GitHub auth errors
        r"GitHub.*401|Bad credentials": {
            "title": "GitHub authentication failed",
            "explanation": "The team's GitHub token is invalid or lacks required permissions.",
            "actions": [
                "Generate new token: https://github.com/settings/tokens (needs 'repo' scope)",
                "Update credentials.gh_token in the config file",
            ],
        },
    }

    FALLBACK_ACTIONS = [
        "Check the daemon or member logs under the supervisor home directory",
        "Re-run the command once the cause is fixed",
    ]

    def translate(self, error: Exception) -> UserFriendlyError:
        """Map an exception onto the first matching pattern, or a generic message."""
        haystack = f"{type(error).__name__}: {error}"
        match = next(
            (entry for pattern, entry in self.ERROR_PATTERNS.items()
             if re.search(pattern, haystack, re.IGNORECASE)),
            None,
        )
        if match is None:
            return UserFriendlyError(
                original_error=error,
                title="Operation failed",
                explanation=str(error),
                actions=list(self.FALLBACK_ACTIONS),
            )

        return UserFriendlyError(
            original_error=error,
            title=match["title"],
            explanation=match["explanation"],
            actions=match["actions"],
            show_technical=match.get("show_technical", False),
        )

    def format_for_cli(self, friendly_error: UserFriendlyError) -> str:
        """Rich markup for the console; error text is escaped."""
        lines = [
            f"[bold red]{friendly_error.title}[/]",
            "",
            escape(friendly_error.explanation),
            "",
            "[bold]How to fix:[/]",
        ]
        lines += [f"  {i}. {action}" for i, action in enumerate(friendly_error.actions, 1)]
        if friendly_error.show_technical:
            lines += ["", "[dim]Technical details:[/]", f"[dim]{escape(str(friendly_error.original_error))}[/]"]
        return "\n".join(lines)
