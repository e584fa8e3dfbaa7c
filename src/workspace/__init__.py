"""Workspace support: member graph, sibling pinning and member projection."""

from .graph import WorkspaceCatalog, WorkspaceGraph, WorkspaceMember
from .loader import load_workspace

__all__ = [
    "WorkspaceCatalog",
    "WorkspaceGraph",
    "WorkspaceMember",
    "load_workspace",
]
