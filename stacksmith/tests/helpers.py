"""Shared helpers for tests: throwaway git repositories and a fake provider."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import git

from stacksmith.config import Config
from stacksmith.errors import AuthenticationFailedError, RejectedProviderError
from stacksmith.git import RealGit
from stacksmith.providers import (
    CreateReviewParams, ProviderType, Review, ReviewProvider, ReviewState, UpdateReviewParams,
)

log = logging.getLogger(__name__)


@dataclass
class RepoContext:
    """A scratch repository with a bare origin next to it."""
    repo_dir: Path
    origin_dir: Path
    repo: git.Repo
    git_cmd: RealGit

    @property
    def git_dir(self) -> Path:
        return Path(self.repo.git_dir)

    def make_commit(self, file: str, content: str, msg: str) -> str:
        """Write file, commit it and return the new HEAD."""
        full_path = self.repo_dir / file
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(f"{content}\n")
        self.repo.git.add(file)
        self.repo.git.commit("-m", msg)
        return self.tip("HEAD")

    def branch(self, name: str, start: Optional[str] = None) -> None:
        """Create name at start (default HEAD) and check it out."""
        if start:
            self.repo.git.checkout("-b", name, start)
        else:
            self.repo.git.checkout("-b", name)

    def checkout(self, name: str) -> None:
        self.repo.git.checkout(name)

    def tip(self, ref: str) -> str:
        return self.repo.git.rev_parse(ref).strip()

    def remote_tip(self, branch: str) -> Optional[str]:
        origin = git.Repo(self.origin_dir)
        try:
            return origin.git.rev_parse(f"refs/heads/{branch}").strip()
        except git.GitCommandError:
            return None

    def current_branch(self) -> str:
        return self.repo.git.symbolic_ref("--short", "HEAD").strip()

    def build_stack(self, names: Iterable[str]) -> Dict[str, str]:
        """One commit per branch, each branch on top of the previous one."""
        tips = {}
        for name in names:
            self.branch(name)
            tips[name] = self.make_commit(f"{name}.txt", f"content of {name}", f"Add {name}")
        return tips


def create_repo_context(base_dir: Path) -> RepoContext:
    repo_dir = base_dir / "repo"
    origin_dir = base_dir / "origin.git"
    repo_dir.mkdir()
    git.Repo.init(origin_dir, bare=True)

    repo = git.Repo.init(repo_dir)
    repo.git.symbolic_ref("HEAD", "refs/heads/main")
    with repo.config_writer() as cw:
        cw.set_value("user", "name", "Stack Tester")
        cw.set_value("user", "email", "tester@example.com")
        cw.set_value("commit", "gpgsign", "false")
        cw.set_value("core", "autocrlf", "false")
    repo.create_remote("origin", str(origin_dir))

    git_cmd = RealGit(Config({}), repo_dir=str(repo_dir))
    ctx = RepoContext(repo_dir, origin_dir, repo, git_cmd)
    ctx.make_commit("README.md", "# scratch", "Initial commit")
    ctx.make_commit("shared.txt", "base", "Add shared file")
    log.info(f"Created scratch repository at {repo_dir}")
    return ctx


class FakeProvider(ReviewProvider):
    """In-memory review provider recording every call.

    Failures are injected per (operation, source branch) and consumed in
    order, so ``fail("create", "B", err)`` makes only the next create for B
    raise.
    """
    provider_type = ProviderType.GITLAB

    def __init__(self, tokens: Optional[Dict[str, Iterable[str]]] = None,
                 provider_type: Optional[ProviderType] = None,
                 base_url: str = "https://gitlab.example.com", project_path: str = "group/project"):
        if provider_type is not None:
            self.provider_type = provider_type
        super().__init__(base_url, project_path)
        self.tokens = {t: frozenset(s) for t, s in (tokens or {"good-token": {"api"}}).items()}
        self.reviews: Dict[str, Review] = {}
        self.calls: List[Tuple[str, ...]] = []
        self.updates: List[Tuple[str, UpdateReviewParams]] = []
        self.failures: Dict[Tuple[str, str], List[Exception]] = {}
        self.active_token: Optional[str] = None
        self._next_id = 1

    def fail(self, op: str, branch: str, *errors: Exception) -> None:
        self.failures.setdefault((op, branch), []).extend(errors)

    def _maybe_fail(self, op: str, branch: str) -> None:
        queue = self.failures.get((op, branch))
        if queue:
            raise queue.pop(0)

    def add_review(self, source: str, target: str, state: ReviewState = ReviewState.OPEN,
                   draft: bool = True) -> Review:
        review = Review(id=str(self._next_id), url=f"{self.base_url}/{self.project_path}/-/merge_requests/{self._next_id}",
                        title=f"Review of {source}", source_branch=source, target_branch=target,
                        draft=draft, state=state)
        self._next_id += 1
        self.reviews[review.id] = review
        return review

    def _use_token(self, token: str) -> None:
        self.active_token = token

    def verify_scopes(self, token: str):
        self.calls.append(("verify_scopes",))
        if token not in self.tokens:
            raise AuthenticationFailedError("Fake", "invalid or expired token")
        return self.tokens[token]

    def create_review(self, params: CreateReviewParams) -> Review:
        self.calls.append(("create", params.source_branch, params.target_branch))
        self._maybe_fail("create", params.source_branch)
        review = self.add_review(params.source_branch, params.target_branch, draft=params.draft)
        review.title = params.title
        review.description = params.description
        return review.model_copy()

    def update_review(self, review_id: str, params: UpdateReviewParams) -> Review:
        review = self.reviews[review_id]
        self.calls.append(("update", review.source_branch, params.target_branch or review.target_branch))
        self._maybe_fail("update", review.source_branch)
        self.updates.append((review_id, params))
        if params.title is not None:
            review.title = params.title
        if params.description is not None:
            review.description = params.description
        if params.target_branch is not None:
            review.target_branch = params.target_branch
        if params.draft is not None:
            review.draft = params.draft
        return review.model_copy()

    def get_review(self, review_id: str) -> Review:
        self.calls.append(("get", review_id))
        if review_id not in self.reviews:
            raise RejectedProviderError(f"Review {review_id} not found", status=404)
        return self.reviews[review_id].model_copy()

    def find_review_for_branch(self, branch: str) -> Optional[Review]:
        self.calls.append(("find", branch))
        for review in self.reviews.values():
            if review.source_branch == branch and review.is_open:
                return review.model_copy()
        return None

    def created_for(self) -> List[str]:
        return [c[1] for c in self.calls if c[0] == "create"]


def env_without_tokens() -> Dict[str, str]:
    return {k: v for k, v in os.environ.items()
            if k not in ("GITHUB_TOKEN", "GH_TOKEN", "GITLAB_TOKEN")}
