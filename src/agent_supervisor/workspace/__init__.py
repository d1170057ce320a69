"""Workspace discovery for team members."""

from .manager import WorkspaceManager, find_workspace, list_member_dirs

__all__ = [
    "WorkspaceManager",
    "find_workspace",
    "list_member_dirs",
]
