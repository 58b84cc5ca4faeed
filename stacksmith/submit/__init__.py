"""Submission pipeline.

Pushes each branch of a stack and creates or updates its review, bottom to
top, so every review's target already exists when it is submitted. Each
branch's outcome is tracked on its own; a failed branch blocks only the
branches stacked on it.
"""

import logging
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, ContextManager, Dict, List, Optional, Tuple, TypeVar

from ..errors import GitError, ProviderError
from ..git import commit_message, list_commits, push_branch
from ..metadata import BranchMetadata, MetadataStore, RepositoryMetadata
from ..providers import (
    CreateReviewParams, Review, ReviewProvider, UpdateReviewParams, with_transient_retry,
)
from ..stack import Branch, Stack
from ..typing import GitInterface

logger = logging.getLogger(__name__)

T = TypeVar("T")

STACK_MARKER = "⬅"


class SubmitStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED_CLOSED = "skipped-closed"
    PUSH_FAILED = "push-failed"
    PROVIDER_FAILED = "provider-failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


# Statuses after which the branch exists remotely and can be targeted
TARGETABLE = {SubmitStatus.CREATED, SubmitStatus.UPDATED, SubmitStatus.SKIPPED_CLOSED}


@dataclass
class BranchResult:
    branch: str
    target: str
    status: SubmitStatus
    review_id: Optional[str] = None
    review_url: Optional[str] = None
    error: Optional[str] = None
    # Review was already on the provider before this run
    review_existed: bool = False

    @property
    def ok(self) -> bool:
        return self.status in TARGETABLE

    @property
    def targetable(self) -> bool:
        """A child can be submitted against this branch."""
        return self.ok or self.review_existed


@dataclass
class SubmissionReport:
    results: List[BranchResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def failed(self) -> List[BranchResult]:
        return [r for r in self.results if not r.ok]

    def get(self, branch: str) -> Optional[BranchResult]:
        for r in self.results:
            if r.branch == branch:
                return r
        return None


def review_title(git_cmd: GitInterface, stack: Stack, branch: Branch) -> str:
    """Subject of the branch's first commit."""
    commits = list_commits(git_cmd, stack.parent_commit_of(branch.name), branch.tip)
    message = commit_message(git_cmd, commits[0] if commits else branch.tip)
    return message.splitlines()[0] if message else branch.name


def stack_listing(stack: Stack, current: str) -> str:
    lines = ["**Stack:**", ""]
    for b in reversed(stack.branches):
        marker = f" {STACK_MARKER}" if b.name == current else ""
        lines.append(f"- `{b.name}`{marker}")
    lines.append(f"- `{stack.base_branch}`")
    return "\n".join(lines)


def review_description(git_cmd: GitInterface, stack: Stack, branch: Branch,
                       show_stack: bool = True) -> str:
    """Commit messages of the branch plus, optionally, the stack around it.

    Built only from commit messages and branch names, so an unchanged stack
    always yields the same text.
    """
    commits = list_commits(git_cmd, stack.parent_commit_of(branch.name), branch.tip)
    messages = [commit_message(git_cmd, c) for c in commits]
    if len(messages) == 1:
        body_lines = messages[0].splitlines()[1:]
        body = "\n".join(body_lines).strip()
    else:
        body = "\n".join(f"- {m.splitlines()[0]}" for m in messages if m)
    parts = [body] if body else []
    if show_stack and len(stack) > 1:
        parts.append(stack_listing(stack, branch.name))
    return "\n\n---\n\n".join(parts)


class SubmissionPipeline:
    def __init__(self, git_cmd: GitInterface, store: MetadataStore, metadata: RepositoryMetadata,
                 provider: ReviewProvider, remote: str = "origin", draft: bool = True,
                 show_stack: bool = True, pretend: bool = False,
                 cancel_event: Optional[threading.Event] = None,
                 retries: int = 1, backoff: float = 2.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.git_cmd = git_cmd
        self.store = store
        self.metadata = metadata
        self.provider = provider
        self.remote = remote
        self.draft = draft
        self.show_stack = show_stack
        self.pretend = pretend
        self.cancel_event = cancel_event or threading.Event()
        self.retries = retries
        self.backoff = backoff
        self.sleep = sleep

    def _lock(self) -> ContextManager[object]:
        return nullcontext() if self.store.locked else self.store.lock()

    def _call(self, what: str, call: Callable[[], T]) -> T:
        return with_transient_retry(call, retries=self.retries, backoff=self.backoff,
                                    sleep=self.sleep, what=what)

    def submit(self, stack: Stack) -> SubmissionReport:
        report = SubmissionReport()
        outcomes: Dict[str, BranchResult] = {}
        with self._lock():
            for branch in stack:
                target = stack.parent_of(branch.name)
                existed = self._has_review(branch.name)
                if self.cancel_event.is_set():
                    result = BranchResult(branch.name, target, SubmitStatus.CANCELLED,
                                          review_existed=existed)
                elif target in outcomes and not outcomes[target].targetable:
                    result = BranchResult(branch.name, target, SubmitStatus.BLOCKED,
                                          error=f"parent branch '{target}' has no review yet",
                                          review_existed=existed)
                    logger.warning(f"Skipping {branch.name}: parent {target} has no review yet")
                else:
                    result = self.submit_branch(stack, branch, target)
                outcomes[branch.name] = result
                report.results.append(result)
        created = sum(1 for r in report.results if r.status == SubmitStatus.CREATED)
        updated = sum(1 for r in report.results if r.status == SubmitStatus.UPDATED)
        logger.info(f"Submitted stack: {created} created, {updated} updated, "
                    f"{len(report.failed)} not submitted")
        return report

    def _has_review(self, name: str) -> bool:
        entry = self.metadata.get_branch(name)
        return entry is not None and bool(entry.review_id)

    def submit_branch(self, stack: Stack, branch: Branch, target: str) -> BranchResult:
        """Push one branch and create or update its review."""
        entry = self.metadata.get_branch(branch.name)
        existed = self._has_review(branch.name)
        if self.pretend:
            action = "update" if entry and entry.review_id else "create"
            logger.info(f"[PRETEND] would push {branch.name} to {self.remote}")
            logger.info(f"[PRETEND] would {action} review {branch.name} -> {target}")
            status = SubmitStatus.UPDATED if action == "update" else SubmitStatus.CREATED
            return BranchResult(branch.name, target, status,
                                entry.review_id if entry else None, entry.review_url if entry else None,
                                review_existed=existed)

        try:
            push_branch(self.git_cmd, self.remote, branch.name, force=True)
        except GitError as e:
            logger.error(f"Push of {branch.name} failed: {e.message}")
            return BranchResult(branch.name, target, SubmitStatus.PUSH_FAILED,
                                entry.review_id if entry else None, error=e.message,
                                review_existed=existed)

        title = review_title(self.git_cmd, stack, branch)
        description = review_description(self.git_cmd, stack, branch, self.show_stack)

        try:
            review, status = self._create_or_update(branch.name, target, title, description, entry)
        except ProviderError as e:
            logger.error(f"Review for {branch.name} failed: {e.message}")
            return BranchResult(branch.name, target, SubmitStatus.PROVIDER_FAILED,
                                entry.review_id if entry else None, error=e.message,
                                review_existed=existed)

        if status != SubmitStatus.SKIPPED_CLOSED:
            self._record(branch.name, target, review, entry)
        return BranchResult(branch.name, target, status, review.id, review.url, review_existed=existed)

    def _create_or_update(self, name: str, target: str, title: str, description: str,
                          entry: Optional[BranchMetadata]) -> Tuple[Review, SubmitStatus]:
        existing: Optional[Review] = None
        if entry is not None and entry.review_id:
            review_id = entry.review_id
            existing = self._call(f"fetch review {review_id}",
                                  lambda: self.provider.get_review(review_id))
            if not existing.is_open:
                logger.info(f"{name}: review {existing.id} is {existing.state.value}; not updating")
                return existing, SubmitStatus.SKIPPED_CLOSED
        else:
            existing = self._call(f"find review for {name}",
                                  lambda: self.provider.find_review_for_branch(name))
            if existing is not None:
                logger.info(f"{name}: adopting existing review {existing.id}")

        if existing is None:
            params = CreateReviewParams(source_branch=name, target_branch=target, title=title,
                                        description=description, draft=self.draft)
            review = self._call(f"create review for {name}", lambda: self.provider.create_review(params))
            logger.info(f"{name}: created review {review.url}")
            return review, SubmitStatus.CREATED

        update = UpdateReviewParams(title=title, description=description, target_branch=target,
                                    draft=existing.draft)
        review_id = existing.id
        review = self._call(f"update review {review_id}",
                            lambda: self.provider.update_review(review_id, update))
        logger.info(f"{name}: updated review {review.url}")
        return review, SubmitStatus.UPDATED

    def _record(self, name: str, parent: str, review: Review,
                entry: Optional[BranchMetadata]) -> None:
        """Persist one branch's review linkage right away."""
        if entry is None:
            entry = BranchMetadata(parent=parent)
            self.metadata.set_branch(name, entry)
        entry.parent = parent
        entry.stale = False
        entry.set_review(review.id, review.url)
        self.store.save(self.metadata)


def submit(git_cmd: GitInterface, stack: Stack, store: MetadataStore, metadata: RepositoryMetadata,
           provider: ReviewProvider, **kwargs) -> SubmissionReport:
    return SubmissionPipeline(git_cmd, store, metadata, provider, **kwargs).submit(stack)
