"""Git interfaces and implementation."""

import os
import shlex
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import git
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from ..config.models import StacksmithConfig
from ..errors import GitError, NotInGitRepositoryError
from ..typing import CommitHash, GitInterface

# Get module logger
logger = logging.getLogger(__name__)


class RealGit:
    """Real Git implementation."""
    def __init__(self, config: StacksmithConfig, repo_dir: Optional[str] = None):
        """Initialize with config and an optional directory inside the repository."""
        self.config: StacksmithConfig = config
        self.repo_dir = repo_dir
        self._repo: Optional[git.Repo] = None

    @property
    def repo(self) -> git.Repo:
        """GitPython repository, discovered from repo_dir or the cwd."""
        if self._repo is None:
            try:
                self._repo = git.Repo(self.repo_dir or os.getcwd(), search_parent_directories=True)
            except (InvalidGitRepositoryError, NoSuchPathError):
                raise NotInGitRepositoryError()
        return self._repo

    def run_cmd(self, command: str, output: Optional[str] = None) -> str:
        """Run git command."""
        return self.git_args(*shlex.split(command.strip()))

    def must_git(self, command: str, output: Optional[str] = None) -> str:
        """Run git command, failing on error."""
        return self.run_cmd(command, output)

    def git_args(self, *args: str, env: Optional[Mapping[str, str]] = None) -> str:
        """Run git with pre-split arguments."""
        cmd_str = " ".join(args)
        if self.config.tool.pretend and args and args[0] == 'push':
            # Pretend mode - just log
            logger.info(f"[PRETEND] > git {cmd_str}")
            return ""

        if self.config.user.log_git_commands:
            logger.info(f"> git {cmd_str}")
        else:
            logger.debug(f"> git {cmd_str}")

        git_command = args[0]
        method = getattr(self.repo.git, git_command.replace('-', '_'))
        try:
            if env:
                result = method(*args[1:], env=dict(env))
            else:
                result = method(*args[1:])
        except GitCommandError as e:
            raise GitError(f"Git command failed: {e}", command=cmd_str) from e
        return result if isinstance(result, str) else str(result)


@dataclass
class RebaseResult:
    """Outcome of rebasing one branch."""
    branch: str
    new_tip: Optional[CommitHash] = None
    conflict_path: Optional[str] = None

    @property
    def conflicted(self) -> bool:
        return self.new_tip is None


@dataclass
class LocalBranchRef:
    """A local branch ref as listed by for-each-ref."""
    name: str
    tip: CommitHash
    upstream: Optional[str] = None


def get_git_dir(git_cmd: GitInterface) -> Path:
    """Absolute path of the repository's .git directory."""
    return Path(git_cmd.must_git("rev-parse --absolute-git-dir").strip())

def get_current_branch(git_cmd: GitInterface) -> Optional[str]:
    """Current branch name, or None when HEAD is detached."""
    try:
        return git_cmd.must_git("symbolic-ref --quiet --short HEAD").strip() or None
    except GitError:
        return None

def resolve_commit(git_cmd: GitInterface, ref: str) -> Optional[CommitHash]:
    """Resolve a ref to a commit hash, None if it does not exist."""
    try:
        return CommitHash(git_cmd.git_args("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}").strip())
    except GitError:
        return None

def local_branch_exists(git_cmd: GitInterface, branch: str) -> bool:
    return resolve_commit(git_cmd, f"refs/heads/{branch}") is not None

def list_local_branches(git_cmd: GitInterface) -> List[LocalBranchRef]:
    """All local branches with their tips and upstreams."""
    output = git_cmd.git_args(
        "for-each-ref", "--format=%(refname:short)%09%(objectname)%09%(upstream:short)", "refs/heads")
    branches: List[LocalBranchRef] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        upstream = parts[2] if len(parts) > 2 and parts[2] else None
        branches.append(LocalBranchRef(parts[0], CommitHash(parts[1]), upstream))
    return branches

def branches_by_commit(git_cmd: GitInterface) -> Dict[str, List[LocalBranchRef]]:
    """Map each commit hash to the local branches whose tip it is."""
    result: Dict[str, List[LocalBranchRef]] = {}
    for ref in list_local_branches(git_cmd):
        result.setdefault(ref.tip, []).append(ref)
    return result

def merge_base(git_cmd: GitInterface, a: str, b: str) -> Optional[CommitHash]:
    """Best common ancestor of two refs, None for unrelated histories."""
    try:
        out = git_cmd.git_args("merge-base", a, b).strip()
    except GitError:
        return None
    return CommitHash(out) if out else None

def fork_point(git_cmd: GitInterface, upstream: str, branch: str) -> Optional[CommitHash]:
    """Commit branch forked from, found through upstream's reflog if upstream was rewritten."""
    try:
        out = git_cmd.git_args("merge-base", "--fork-point", upstream, branch).strip()
    except GitError:
        out = ""
    return CommitHash(out) if out else merge_base(git_cmd, upstream, branch)

def list_commits(git_cmd: GitInterface, base: str, tip: str) -> List[CommitHash]:
    """Commits in base..tip, oldest first."""
    out = git_cmd.git_args("rev-list", "--reverse", "--topo-order", f"{base}..{tip}").strip()
    return [CommitHash(h) for h in out.splitlines() if h]

def find_merge_commits(git_cmd: GitInterface, base: str, tip: str) -> List[CommitHash]:
    """Merge commits in base..tip, oldest first."""
    out = git_cmd.git_args("rev-list", "--merges", "--reverse", "--topo-order", f"{base}..{tip}").strip()
    return [CommitHash(h) for h in out.splitlines() if h]

def commit_message(git_cmd: GitInterface, commit: str) -> str:
    return git_cmd.git_args("show", "-s", "--format=%B", commit).strip()

def is_rebase_in_progress(git_cmd: GitInterface) -> bool:
    git_dir = get_git_dir(git_cmd)
    return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

def has_uncommitted_changes(git_cmd: GitInterface) -> bool:
    """Whether tracked files have staged or unstaged changes."""
    return bool(git_cmd.must_git("status --porcelain --untracked-files=no").strip())

def conflicting_paths(git_cmd: GitInterface) -> List[str]:
    out = git_cmd.must_git("diff --name-only --diff-filter=U").strip()
    return [p for p in out.splitlines() if p]

def rebase_onto(git_cmd: GitInterface, branch: str, new_base: str, old_base: str) -> RebaseResult:
    """Replay old_base..branch on top of new_base.

    A conflict leaves the repository mid-rebase and is reported through the
    result rather than raised, so the caller decides what happens next.
    """
    try:
        git_cmd.git_args("rebase", "--onto", new_base, old_base, branch)
    except GitError as e:
        if not is_rebase_in_progress(git_cmd):
            raise
        paths = conflicting_paths(git_cmd)
        logger.debug(f"Rebase of {branch} stopped: {e}")
        return RebaseResult(branch, None, paths[0] if paths else None)
    return RebaseResult(branch, resolve_commit(git_cmd, f"refs/heads/{branch}"))

def rebase_continue(git_cmd: GitInterface) -> bool:
    """Continue an in-progress rebase. Returns False if it stopped on another conflict."""
    try:
        git_cmd.git_args("rebase", "--continue", env={"GIT_EDITOR": "true"})
    except GitError:
        if is_rebase_in_progress(git_cmd):
            return False
        raise
    return True

def rebase_abort(git_cmd: GitInterface) -> None:
    git_cmd.must_git("rebase --abort")

def checkout(git_cmd: GitInterface, branch: str) -> None:
    git_cmd.git_args("checkout", "--quiet", branch)

def detach_head(git_cmd: GitInterface) -> None:
    """Detach HEAD at its current commit so branch refs can be moved freely."""
    git_cmd.git_args("checkout", "--quiet", "--detach")

def update_ref(git_cmd: GitInterface, branch: str, commit: str) -> None:
    """Force a local branch to point at commit."""
    git_cmd.git_args("update-ref", f"refs/heads/{branch}", commit)

def push_branch(git_cmd: GitInterface, remote: str, branch: str, force: bool = False) -> None:
    """Push a branch, setting upstream tracking when it has none."""
    args = ["push"]
    if force:
        args.append("--force-with-lease")
    if get_upstream(git_cmd, branch) is None:
        args.append("--set-upstream")
    args.extend([remote, f"refs/heads/{branch}:refs/heads/{branch}"])
    git_cmd.git_args(*args)

def get_upstream(git_cmd: GitInterface, branch: str) -> Optional[str]:
    try:
        out = git_cmd.git_args("rev-parse", "--abbrev-ref", "--symbolic-full-name", f"{branch}@{{upstream}}")
    except GitError:
        return None
    return out.strip() or None

def list_remotes(git_cmd: GitInterface) -> List[str]:
    return [r for r in git_cmd.must_git("remote").split() if r]

def get_remote_url(git_cmd: GitInterface, remote: str = "origin") -> str:
    """Fetch URL of a remote."""
    try:
        return git_cmd.git_args("remote", "get-url", remote).strip()
    except GitError:
        available = ", ".join(list_remotes(git_cmd)) or "none"
        raise GitError(f"Remote '{remote}' not found. Available remotes: {available}")

def detect_default_branch(git_cmd: GitInterface, remote: str = "origin") -> str:
    """Guess the repository's default branch.

    Tries the remote's HEAD symbolic ref, then local main/master, then
    remote main/master, and falls back to "main".
    """
    try:
        target = git_cmd.git_args("symbolic-ref", "--quiet", f"refs/remotes/{remote}/HEAD").strip()
        prefix = f"refs/remotes/{remote}/"
        if target.startswith(prefix):
            return target[len(prefix):]
    except GitError:
        pass

    for candidate in ("main", "master"):
        if local_branch_exists(git_cmd, candidate):
            return candidate
    for candidate in ("main", "master"):
        if resolve_commit(git_cmd, f"refs/remotes/{remote}/{candidate}") is not None:
            return candidate
    return "main"
