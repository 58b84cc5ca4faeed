"""Stack model and detection.

A stack is the ordered run of local branches between a base branch and a
tip branch, root first. It is rebuilt from git refs on every invocation and
never cached.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from ..errors import (
    BranchNotFoundError, DetachedHeadError, EmptyStackError, MergeCommitPresentError,
    NoLinearPathError, StackError,
)
from ..git import (
    LocalBranchRef, branches_by_commit, find_merge_commits, get_current_branch, list_commits,
    merge_base, resolve_commit,
)
from ..typing import CommitHash, GitInterface

logger = logging.getLogger(__name__)


@dataclass
class Branch:
    """A named local ref with its tip and optional pushed upstream."""
    name: str
    tip: CommitHash
    upstream: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.name} ({self.tip[:8]})"


@dataclass
class Stack:
    """Ordered, linear sequence of branches from base (exclusive) to tip."""
    base_branch: str
    base_commit: CommitHash
    branches: List[Branch] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not self.branches:
            raise EmptyStackError("<none>", self.base_branch)
        seen: Dict[str, int] = {}
        for i, b in enumerate(self.branches):
            if b.name in seen or b.name == self.base_branch:
                raise StackError(f"Branch '{b.name}' appears more than once in the stack.")
            seen[b.name] = i

    def __iter__(self) -> Iterator[Branch]:
        return iter(self.branches)

    def __len__(self) -> int:
        return len(self.branches)

    @property
    def names(self) -> List[str]:
        return [b.name for b in self.branches]

    @property
    def tip(self) -> Branch:
        return self.branches[-1]

    def index_of(self, name: str) -> int:
        for i, b in enumerate(self.branches):
            if b.name == name:
                return i
        raise BranchNotFoundError(name)

    def get(self, name: str) -> Branch:
        return self.branches[self.index_of(name)]

    def parent_of(self, name: str) -> str:
        """Name of the branch below, or the base branch for the first one."""
        i = self.index_of(name)
        return self.base_branch if i == 0 else self.branches[i - 1].name

    def parent_commit_of(self, name: str) -> CommitHash:
        i = self.index_of(name)
        return self.base_commit if i == 0 else self.branches[i - 1].tip


def _order_shared(refs: List[LocalBranchRef], start_branch: str) -> List[LocalBranchRef]:
    """Branches sharing one commit: by name, start branch last."""
    return sorted(refs, key=lambda r: (r.name == start_branch, r.name))


def detect(git_cmd: GitInterface, start_branch: Optional[str], base_branch: str) -> Stack:
    """Build the stack running from base_branch up to start_branch.

    start_branch defaults to the current branch. Walks base..start, collects
    every local branch whose tip lies on that path (closest to base first),
    and rejects the stack if the path holds a merge commit.
    """
    if start_branch is None:
        start_branch = get_current_branch(git_cmd)
        if start_branch is None:
            raise DetachedHeadError()

    if start_branch == base_branch:
        raise EmptyStackError(start_branch, base_branch)

    start_tip = resolve_commit(git_cmd, f"refs/heads/{start_branch}")
    if start_tip is None:
        raise BranchNotFoundError(start_branch)
    base_tip = resolve_commit(git_cmd, base_branch)
    if base_tip is None:
        raise BranchNotFoundError(base_branch)

    fork_point = merge_base(git_cmd, base_tip, start_tip)
    if fork_point is None:
        raise NoLinearPathError(start_branch, base_branch)

    path = list_commits(git_cmd, fork_point, start_tip)
    if not path:
        raise EmptyStackError(start_branch, base_branch)
    logger.debug(f"Stack path {fork_point[:8]}..{start_tip[:8]}: {len(path)} commits")

    refs_at = branches_by_commit(git_cmd)
    branches: List[Branch] = []
    for commit in path:
        for ref in _order_shared(refs_at.get(commit, []), start_branch):
            if ref.name == base_branch:
                continue
            branches.append(Branch(ref.name, ref.tip, ref.upstream))

    # Linearity check per adjacent pair so the error names the branch above the merge
    prev = fork_point
    for b in branches:
        merges = find_merge_commits(git_cmd, prev, b.tip)
        if merges:
            raise MergeCommitPresentError(merges[0], b.name)
        prev = b.tip

    stack = Stack(base_branch, fork_point, branches)
    logger.info(f"Detected stack on {base_branch}: {' -> '.join(stack.names)}")
    return stack
