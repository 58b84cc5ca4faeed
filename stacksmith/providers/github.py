"""GitHub pull requests via PyGithub."""

import logging
from contextlib import contextmanager
from typing import Any, FrozenSet, Iterator, Optional

import requests
from github import Auth, Github
from github.GithubException import BadCredentialsException, GithubException, UnknownObjectException

from ..errors import AuthenticationFailedError, RejectedProviderError, TransientProviderError
from .base import ReviewProvider
from .types import CreateReviewParams, ProviderType, Review, ReviewState, UpdateReviewParams

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


def api_url_for(base_url: str) -> str:
    """REST endpoint for a GitHub web URL; Enterprise hosts serve it under /api/v3."""
    base_url = base_url.rstrip('/')
    if base_url in ("https://github.com", "http://github.com", "https://api.github.com"):
        return "https://api.github.com"
    return f"{base_url}/api/v3"


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except BadCredentialsException as e:
        raise AuthenticationFailedError("GitHub") from e
    except UnknownObjectException as e:
        raise RejectedProviderError(f"GitHub could not {action}: not found",
                                    "Check the repository path and that the token can see it.",
                                    status=404) from e
    except GithubException as e:
        message = e.data.get("message") if isinstance(e.data, dict) else e.data
        if e.status is None or e.status >= 500:
            raise TransientProviderError(f"GitHub could not {action}: {message}", status=e.status) from e
        if e.status == 401:
            raise AuthenticationFailedError("GitHub") from e
        raise RejectedProviderError(f"GitHub could not {action}: {message}", status=e.status) from e
    except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
        raise TransientProviderError(f"GitHub could not {action}: {e}") from e


class GitHubProvider(ReviewProvider):
    provider_type = ProviderType.GITHUB

    def __init__(self, base_url: str = "https://github.com", project_path: Optional[str] = None,
                 required_scope: Optional[str] = None, client: Optional[Any] = None):
        """client may be any object shaped like github.Github; tests pass a fake."""
        super().__init__(base_url, project_path, required_scope)
        self.api_url = api_url_for(self.base_url)
        self._injected = client is not None
        self.client = client
        self._repo: Optional[Any] = None

    def _make_client(self, token: str) -> Any:
        # with_transient_retry is the only retry layer
        return Github(auth=Auth.Token(token), base_url=self.api_url, timeout=DEFAULT_TIMEOUT,
                      retry=None)

    def _use_token(self, token: str) -> None:
        if not self._injected:
            self.client = self._make_client(token)
            self._repo = None

    @property
    def repo(self) -> Any:
        if self._repo is None:
            project = self.require_project()
            with _translate_errors(f"open repository {project}"):
                self._repo = self.client.get_repo(project)
        return self._repo

    def verify_scopes(self, token: str) -> FrozenSet[str]:
        client = self.client if self._injected else self._make_client(token)
        with _translate_errors("verify token"):
            login = client.get_user().login
        scopes = client.oauth_scopes
        if not scopes:
            # Fine-grained tokens report no scopes at all
            logger.debug(f"Token for {login} reports no OAuth scopes")
            return frozenset()
        return frozenset(s.strip() for s in scopes if s.strip())

    @staticmethod
    def _to_review(pr: Any) -> Review:
        if getattr(pr, "merged", False):
            state = ReviewState.MERGED
        elif pr.state == "closed":
            state = ReviewState.CLOSED
        else:
            state = ReviewState.OPEN
        return Review(
            id=str(pr.number),
            url=pr.html_url,
            title=pr.title,
            description=pr.body or "",
            source_branch=pr.head.ref,
            target_branch=pr.base.ref,
            draft=bool(getattr(pr, "draft", False)),
            state=state,
        )

    def create_review(self, params: CreateReviewParams) -> Review:
        self.require_auth()
        logger.info(f"> github create {params.source_branch} -> {params.target_branch} : {params.title}")
        with _translate_errors(f"create pull request for {params.source_branch}"):
            pr = self.repo.create_pull(title=params.title, body=params.description,
                                       base=params.target_branch, head=params.source_branch,
                                       draft=params.draft)
        return self._to_review(pr)

    def update_review(self, review_id: str, params: UpdateReviewParams) -> Review:
        self.require_auth()
        logger.info(f"> github update #{review_id}")
        with _translate_errors(f"update pull request #{review_id}"):
            pr = self.repo.get_pull(int(review_id))
            changes = {}
            if params.title is not None and params.title != pr.title:
                changes["title"] = params.title
            if params.description is not None and params.description != (pr.body or ""):
                changes["body"] = params.description
            if params.target_branch is not None and params.target_branch != pr.base.ref:
                changes["base"] = params.target_branch
            if changes:
                logger.debug(f"PR #{review_id} changes: {sorted(changes)}")
                pr.edit(**changes)
            if params.draft is not None and params.draft != bool(pr.draft):
                if params.draft:
                    pr.convert_to_draft()
                else:
                    pr.mark_ready_for_review()
            pr = self.repo.get_pull(int(review_id))
        return self._to_review(pr)

    def get_review(self, review_id: str) -> Review:
        self.require_auth()
        with _translate_errors(f"fetch pull request #{review_id}"):
            pr = self.repo.get_pull(int(review_id))
            return self._to_review(pr)

    def find_review_for_branch(self, branch: str) -> Optional[Review]:
        self.require_auth()
        owner = self.require_project().split('/')[0]
        with _translate_errors(f"search pull requests for {branch}"):
            for pr in self.repo.get_pulls(state='open', head=f"{owner}:{branch}"):
                if pr.head.ref == branch:
                    return self._to_review(pr)
        return None
