"""Restack orchestration.

Rebases every branch of a stack onto its updated predecessor, strictly
bottom to top. Each branch moves through

    PENDING -> REBASING -> SUCCEEDED | CONFLICTED

and a conflict halts the run: branches above it keep their original tips
and the repository is left mid-rebase for the user to resolve. The halted
run is saved to ``restack-state.yml`` so ``--continue`` and ``--abort`` can
pick it up.
"""

import logging
import os
import threading
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..errors import CorruptedMetadataError, EmptyStackError, RebaseConflictError, StackError
from ..git import (
    checkout, conflicting_paths, detach_head, fork_point, get_current_branch, is_rebase_in_progress,
    local_branch_exists, push_branch, rebase_abort, rebase_continue, rebase_onto, resolve_commit,
    update_ref,
)
from ..metadata import RepositoryMetadata
from ..stack import Stack, detect
from ..typing import GitInterface

logger = logging.getLogger(__name__)

STATE_FILENAME = "restack-state.yml"


class BranchState(str, Enum):
    PENDING = "pending"
    REBASING = "rebasing"
    SUCCEEDED = "succeeded"
    CONFLICTED = "conflicted"


class BranchRestack(BaseModel):
    """Progress of one branch through a restack."""
    name: str
    old_tip: str
    state: BranchState = BranchState.PENDING
    new_tip: Optional[str] = None
    conflict_path: Optional[str] = None
    # Set when the parent was rewritten and no longer contains this commit
    old_base: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.state == BranchState.SUCCEEDED and self.new_tip != self.old_tip


class RestackReport(BaseModel):
    """Outcome of a restack; also the persisted state of a halted one."""
    base_branch: str
    # Old commit the first branch was forked from
    base_old: str
    original_branch: Optional[str] = None
    branches: List[BranchRestack] = Field(default_factory=list)
    pushed: List[str] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def conflict(self) -> Optional[BranchRestack]:
        for b in self.branches:
            if b.state == BranchState.CONFLICTED:
                return b
        return None

    @property
    def complete(self) -> bool:
        return all(b.state == BranchState.SUCCEEDED for b in self.branches)

    @property
    def push_queue(self) -> List[str]:
        """Branches whose tip moved and so need a force-push."""
        return [b.name for b in self.branches if b.changed]

    def get(self, name: str) -> BranchRestack:
        for b in self.branches:
            if b.name == name:
                return b
        raise KeyError(name)


class RestackStateFile:
    """Saved state of a restack halted on a conflict or cancelled."""

    def __init__(self, directory: Path):
        self.path = Path(directory) / STATE_FILENAME

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> RestackReport:
        try:
            with open(self.path, "r") as f:
                doc = yaml.safe_load(f)
            return RestackReport.model_validate(doc)
        except (OSError, yaml.YAMLError, ValidationError) as e:
            raise CorruptedMetadataError(self.path, str(e)) from e

    def save(self, report: RestackReport) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".yml.tmp")
        with open(tmp_path, "w") as f:
            yaml.safe_dump(report.model_dump(mode="json"), f, sort_keys=False)
        os.replace(tmp_path, self.path)
        logger.debug(f"Saved restack state to {self.path}")

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


class RestackOrchestrator:
    """Drives one restack run over a report's branch list."""

    def __init__(self, git_cmd: GitInterface, state_file: RestackStateFile,
                 cancel_event: Optional[threading.Event] = None):
        self.git_cmd = git_cmd
        self.state_file = state_file
        self.cancel_event = cancel_event or threading.Event()

    def start(self, stack: Stack, metadata: Optional[RepositoryMetadata] = None) -> RestackReport:
        """Restack stack onto the current tip of its base branch.

        With metadata, a bottom branch whose recorded parent was amended out
        of its history is restacked onto that parent again.
        """
        branches, base_old = self._plan(stack, metadata)
        report = RestackReport(
            base_branch=stack.base_branch,
            base_old=base_old,
            original_branch=get_current_branch(self.git_cmd),
            branches=branches,
        )
        logger.info(f"Restacking {len(branches)} branches onto {stack.base_branch}")
        return self.run(report)

    def _plan(self, stack: Stack,
              metadata: Optional[RepositoryMetadata]) -> Tuple[List[BranchRestack], str]:
        branches = [BranchRestack(name=b.name, old_tip=b.tip) for b in stack]
        base_old = stack.base_commit
        seen = set(stack.names)
        while metadata is not None:
            bottom = branches[0]
            recorded = metadata.get_branch(bottom.name)
            parent = recorded.parent if recorded else None
            if (not parent or parent == stack.base_branch or parent in seen
                    or not local_branch_exists(self.git_cmd, parent)):
                break
            old_base = fork_point(self.git_cmd, parent, bottom.name)
            if old_base is None:
                break
            try:
                below = detect(self.git_cmd, parent, stack.base_branch)
            except EmptyStackError:
                break
            if seen.intersection(below.names):
                break
            logger.info(f"{bottom.name}: recorded parent {parent} was rewritten; restacking onto it")
            bottom.old_base = old_base
            branches = [BranchRestack(name=b.name, old_tip=b.tip) for b in below] + branches
            seen.update(below.names)
            base_old = below.base_commit
        return branches, base_old

    def run(self, report: RestackReport) -> RestackReport:
        """Process every PENDING branch in order, halting on a conflict."""
        for i, entry in enumerate(report.branches):
            if entry.state != BranchState.PENDING:
                continue
            if self.cancel_event.is_set():
                logger.warning(f"Cancelled before {entry.name}; remaining branches untouched")
                report.cancelled = True
                self.state_file.save(report)
                if report.original_branch:
                    checkout(self.git_cmd, report.original_branch)
                return report
            self.step(report, i)
            if entry.state == BranchState.CONFLICTED:
                self.state_file.save(report)
                return report

        self.state_file.clear()
        if report.original_branch:
            checkout(self.git_cmd, report.original_branch)
        changed = report.push_queue
        logger.info(f"Restack complete: {len(changed)} of {len(report.branches)} branches rewritten")
        return report

    def _new_base_for(self, report: RestackReport, index: int) -> str:
        if index == 0:
            tip = resolve_commit(self.git_cmd, report.base_branch)
            if tip is None:
                raise StackError(f"Base branch '{report.base_branch}' no longer exists.")
            return tip
        parent = report.branches[index - 1]
        return parent.new_tip or parent.old_tip

    def _old_base_for(self, report: RestackReport, index: int) -> str:
        entry = report.branches[index]
        if entry.old_base:
            return entry.old_base
        return report.base_old if index == 0 else report.branches[index - 1].old_tip

    def step(self, report: RestackReport, index: int) -> BranchRestack:
        """Rebase one branch onto its parent's new tip."""
        entry = report.branches[index]
        new_base = self._new_base_for(report, index)
        old_base = self._old_base_for(report, index)

        if new_base == old_base:
            logger.info(f"{entry.name}: already on top of its parent")
            entry.state = BranchState.SUCCEEDED
            entry.new_tip = entry.old_tip
            return entry

        entry.state = BranchState.REBASING
        logger.info(f"Rebasing {entry.name} onto {new_base[:8]}")
        result = rebase_onto(self.git_cmd, entry.name, new_base, old_base)
        if result.conflicted:
            entry.state = BranchState.CONFLICTED
            entry.conflict_path = result.conflict_path
            logger.error(f"{entry.name}: conflict in {result.conflict_path or 'unknown path'}")
            return entry

        entry.state = BranchState.SUCCEEDED
        entry.new_tip = result.new_tip
        if entry.changed:
            logger.info(f"{entry.name}: {entry.old_tip[:8]} -> {(entry.new_tip or '')[:8]}")
        return entry

    def resume(self) -> RestackReport:
        """Finish the conflicted rebase and restack the branches above it."""
        report = self.state_file.load()
        entry = report.conflict
        if entry is not None:
            if is_rebase_in_progress(self.git_cmd):
                if not rebase_continue(self.git_cmd):
                    paths = conflicting_paths(self.git_cmd)
                    entry.conflict_path = paths[0] if paths else entry.conflict_path
                    self.state_file.save(report)
                    raise RebaseConflictError(entry.name, entry.conflict_path)
            entry.state = BranchState.SUCCEEDED
            entry.new_tip = resolve_commit(self.git_cmd, f"refs/heads/{entry.name}")
            entry.conflict_path = None
            logger.info(f"{entry.name}: conflict resolved")
        report.cancelled = False
        return self.run(report)

    def abort(self) -> RestackReport:
        """Abandon the halted restack and put every branch back where it was."""
        report = self.state_file.load()
        if is_rebase_in_progress(self.git_cmd):
            rebase_abort(self.git_cmd)
        detach_head(self.git_cmd)
        for entry in report.branches:
            current = resolve_commit(self.git_cmd, f"refs/heads/{entry.name}")
            if current != entry.old_tip:
                logger.info(f"Restoring {entry.name} to {entry.old_tip[:8]}")
                update_ref(self.git_cmd, entry.name, entry.old_tip)
            entry.state = BranchState.PENDING
            entry.new_tip = None
            entry.conflict_path = None
        if report.original_branch:
            checkout(self.git_cmd, report.original_branch)
        self.state_file.clear()
        return report


def push_queued(git_cmd: GitInterface, remote: str, report: RestackReport) -> List[str]:
    """Force-push every rewritten branch, bottom first."""
    for name in report.push_queue:
        push_branch(git_cmd, remote, name, force=True)
        report.pushed.append(name)
    return report.pushed


def restack(git_cmd: GitInterface, stack: Stack, state_dir: Path,
            cancel_event: Optional[threading.Event] = None,
            metadata: Optional[RepositoryMetadata] = None) -> RestackReport:
    return RestackOrchestrator(git_cmd, RestackStateFile(state_dir), cancel_event).start(stack, metadata)
