"""Error types for stacksmith.

Every error names the entity involved (branch, review, scope, file) and,
where there is one, the action that gets the user unstuck.
"""

from enum import Enum
from pathlib import Path
from typing import Iterable, Optional


class ErrorCategory(str, Enum):
    """Broad classes of failure, used to decide retry and propagation."""
    INPUT = "input"
    STRUCTURAL_GIT_STATE = "structural-git-state"
    PROVIDER_TRANSIENT = "provider-transient"
    PROVIDER_REJECTED = "provider-rejected"
    METADATA = "metadata"
    LOCK = "lock"


class StackError(Exception):
    """Base class for all stacksmith errors."""
    category: ErrorCategory = ErrorCategory.INPUT

    def __init__(self, message: str, remedy: Optional[str] = None):
        self.message = message
        self.remedy = remedy
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.remedy:
            return f"{self.message}\n\n{self.remedy}"
        return self.message


# Git / input errors

class GitError(StackError):
    """A git command failed."""
    category = ErrorCategory.STRUCTURAL_GIT_STATE

    def __init__(self, message: str, command: Optional[str] = None):
        self.command = command
        super().__init__(message)


class NotInGitRepositoryError(StackError):
    def __init__(self) -> None:
        super().__init__("Not in a git repository.",
                         "Run this command from inside a git repository.")


class BranchNotFoundError(StackError):
    def __init__(self, branch: str):
        self.branch = branch
        super().__init__(f"Branch not found: {branch}",
                         "Check the branch name with 'git branch --list'.")


class DetachedHeadError(StackError):
    def __init__(self) -> None:
        super().__init__("HEAD is detached - not on a branch.",
                         "Check out a branch or pass the branch name explicitly.")


class EmptyStackError(StackError):
    def __init__(self, current_branch: str, base_branch: str):
        self.current_branch = current_branch
        self.base_branch = base_branch
        super().__init__(
            f"No commits in stack between '{current_branch}' and '{base_branch}'.",
            "Ensure you have commits on top of the base branch.")


class NoLinearPathError(StackError):
    category = ErrorCategory.STRUCTURAL_GIT_STATE

    def __init__(self, start_branch: str, base_branch: str):
        self.start_branch = start_branch
        self.base_branch = base_branch
        super().__init__(
            f"No linear path from '{start_branch}' down to '{base_branch}': "
            "the histories share no common ancestor.",
            f"Rebase '{start_branch}' onto '{base_branch}' or choose another base branch.")


class MergeCommitPresentError(StackError):
    category = ErrorCategory.STRUCTURAL_GIT_STATE

    def __init__(self, commit: str, branch: str):
        self.commit = commit
        self.branch = branch
        super().__init__(
            f"Stack contains merge commit {commit} (below branch '{branch}'). Stacks must be linear.",
            "Use 'git log --graph --oneline' to find it, then rebase to remove it.")


class RebaseConflictError(StackError):
    category = ErrorCategory.STRUCTURAL_GIT_STATE

    def __init__(self, branch: str, path: Optional[str] = None):
        self.branch = branch
        self.path = path
        where = f" in {path}" if path else ""
        super().__init__(
            f"Rebase of branch '{branch}' stopped on a conflict{where}.",
            "Resolve the conflict, 'git add' the files, then run 'stk restack --continue' "
            "(or 'stk restack --abort' to restore every branch).")


class RebaseInProgressError(StackError):
    category = ErrorCategory.STRUCTURAL_GIT_STATE

    def __init__(self) -> None:
        super().__init__(
            "A rebase is already in progress.",
            "Resolve conflicts and run 'stk restack --continue', or 'stk restack --abort'.")


class UncommittedChangesError(StackError):
    category = ErrorCategory.STRUCTURAL_GIT_STATE

    def __init__(self) -> None:
        super().__init__("You have uncommitted changes.",
                         "Commit or stash them before proceeding.")


# Provider errors

class ProviderError(StackError):
    """Base class for errors reported by a review provider."""
    category = ErrorCategory.PROVIDER_REJECTED

    def __init__(self, message: str, remedy: Optional[str] = None,
                 status: Optional[int] = None):
        self.status = status
        super().__init__(message, remedy)


class TransientProviderError(ProviderError):
    """Timeouts, connection failures and 5xx responses. Worth one retry."""
    category = ErrorCategory.PROVIDER_TRANSIENT


class RejectedProviderError(ProviderError):
    """The provider refused the request (4xx, validation). Never retried."""
    category = ErrorCategory.PROVIDER_REJECTED


class AuthenticationFailedError(RejectedProviderError):
    def __init__(self, provider: str, reason: str = "invalid or expired token"):
        self.provider = provider
        self.reason = reason
        super().__init__(f"Authentication with {provider} failed: {reason}.",
                         "Re-authenticate with 'stk auth'.", status=401)


class MissingScopeError(RejectedProviderError):
    def __init__(self, provider: str, required: str, scopes: Iterable[str]):
        self.provider = provider
        self.required = required
        self.scopes = set(scopes)
        have = ", ".join(sorted(self.scopes)) or "none"
        super().__init__(
            f"{provider} token is missing required scope '{required}' (token scopes: {have}).",
            f"Create a token with the '{required}' scope and run 'stk auth'.", status=403)


class ProviderDetectionFailedError(StackError):
    def __init__(self, remote_url: str):
        self.remote_url = remote_url
        super().__init__(
            f"Could not detect provider from git remote: {remote_url}",
            "Supported providers: gitlab, github. Specify one with 'stk init --provider <provider>'.")


class UnknownProviderError(StackError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}",
                         "Supported providers: gitlab, github.")


class CredentialResolutionError(ProviderError):
    category = ErrorCategory.PROVIDER_REJECTED

    def __init__(self, provider: str, attempts: Iterable[str]):
        self.provider = provider
        self.attempts = list(attempts)
        tried = "; ".join(self.attempts) or "no credential source available"
        super().__init__(f"No usable {provider} token found ({tried}).",
                         "Run 'stk auth' in an interactive terminal or set a token in the environment.")


# Metadata errors

class MetadataError(StackError):
    category = ErrorCategory.METADATA


class NotInitializedError(MetadataError):
    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Repository not initialized (no metadata at {path}).",
                         "Run 'stk init' first.")


class CorruptedMetadataError(MetadataError):
    def __init__(self, path: Path, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"Metadata file {path} is unreadable: {detail}",
                         "Inspect the file manually; Git state is unaffected.")


class UnsupportedMetadataVersionError(MetadataError):
    def __init__(self, version: str, supported_version: str):
        self.version = version
        self.supported_version = supported_version
        super().__init__(
            f"Unsupported metadata version: {version} (this version supports {supported_version}).",
            "Upgrade stacksmith or re-run 'stk init' after moving the old file aside.")


class AlreadyInitializedError(StackError):
    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Repository already initialized at {path}")


class OperationInProgressError(StackError):
    category = ErrorCategory.LOCK

    def __init__(self, lock_path: Path, holder: Optional[str] = None):
        self.lock_path = lock_path
        self.holder = holder
        by = f" by pid {holder}" if holder else ""
        super().__init__(
            f"Another stacksmith operation is in progress (lock {lock_path} held{by}).",
            f"Wait for it to finish. If no other stk process is running, remove {lock_path}.")
