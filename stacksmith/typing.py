"""Common types used across the codebase."""

from typing import Optional, Protocol, NewType

CommitHash = NewType('CommitHash', str)


class GitInterface(Protocol):
    """Protocol for what the engine expects from a git runner."""
    def run_cmd(self, command: str, output: Optional[str] = None) -> str:
        """Run git command."""
        ...

    def must_git(self, command: str, output: Optional[str] = None) -> str:
        """Run git command, failing on error."""
        ...

    def git_args(self, *args: str) -> str:
        """Run git with pre-split arguments."""
        ...
