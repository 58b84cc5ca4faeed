"""GitLab merge requests over the REST v4 API, using httpx."""

import logging
from typing import Any, Dict, FrozenSet, Optional
from urllib.parse import quote

import httpx

from ..errors import AuthenticationFailedError, RejectedProviderError, TransientProviderError
from .base import ReviewProvider
from .types import CreateReviewParams, ProviderType, Review, ReviewState, UpdateReviewParams

logger = logging.getLogger(__name__)

DRAFT_PREFIX = "Draft: "
_STATES = {"opened": ReviewState.OPEN, "merged": ReviewState.MERGED,
           "closed": ReviewState.CLOSED, "locked": ReviewState.CLOSED}


def strip_draft(title: str) -> str:
    for prefix in (DRAFT_PREFIX, "WIP: ", "[Draft] ", "(Draft) "):
        if title.startswith(prefix):
            return title[len(prefix):]
    return title


def draft_title(title: str, draft: bool) -> str:
    title = strip_draft(title)
    return f"{DRAFT_PREFIX}{title}" if draft else title


class GitLabProvider(ReviewProvider):
    provider_type = ProviderType.GITLAB

    def __init__(self, base_url: str = "https://gitlab.com", project_path: Optional[str] = None,
                 required_scope: Optional[str] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        super().__init__(base_url, project_path, required_scope)
        self.api_url = f"{self.base_url}/api/v4"
        self.transport = transport
        self.timeout = httpx.Timeout(connect=5.0, read=30.0, write=10.0, pool=5.0)
        self._token: Optional[str] = None

    def _use_token(self, token: str) -> None:
        self._token = token

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        return {
            'Accept': 'application/json',
            'PRIVATE-TOKEN': token or self._token or '',
        }

    @property
    def _project_api(self) -> str:
        return f"{self.api_url}/projects/{quote(self.require_project(), safe='')}"

    def _request(self, method: str, url: str, action: str, token: Optional[str] = None,
                 **kwargs: Any) -> Any:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, url, headers=self._headers(token), **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"GitLab could not {action}: request timed out") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"GitLab could not {action}: {e}") from e

        if response.status_code >= 500:
            raise TransientProviderError(
                f"GitLab could not {action}: HTTP {response.status_code}", status=response.status_code)
        if response.status_code == 401:
            raise AuthenticationFailedError("GitLab")
        if response.status_code >= 400:
            raise RejectedProviderError(
                f"GitLab could not {action}: HTTP {response.status_code} {_error_message(response)}",
                status=response.status_code)
        return response.json()

    def verify_scopes(self, token: str) -> FrozenSet[str]:
        data = self._request("GET", f"{self.api_url}/personal_access_tokens/self",
                             "verify token", token=token)
        if not data.get("active", True) or data.get("revoked"):
            raise AuthenticationFailedError("GitLab", "token is inactive or revoked")
        return frozenset(data.get("scopes") or [])

    @staticmethod
    def _to_review(data: Dict[str, Any]) -> Review:
        title = data.get("title") or ""
        draft = bool(data.get("draft", data.get("work_in_progress", False)))
        return Review(
            id=str(data["iid"]),
            url=data["web_url"],
            title=strip_draft(title) if draft else title,
            description=data.get("description") or "",
            source_branch=data["source_branch"],
            target_branch=data["target_branch"],
            draft=draft,
            state=_STATES.get(data.get("state", "opened"), ReviewState.OPEN),
        )

    def create_review(self, params: CreateReviewParams) -> Review:
        self.require_auth()
        logger.info(f"> gitlab create {params.source_branch} -> {params.target_branch} : {params.title}")
        body = {
            "source_branch": params.source_branch,
            "target_branch": params.target_branch,
            "title": draft_title(params.title, params.draft),
            "description": params.description,
        }
        data = self._request("POST", f"{self._project_api}/merge_requests",
                             f"create merge request for {params.source_branch}", json=body)
        return self._to_review(data)

    def update_review(self, review_id: str, params: UpdateReviewParams) -> Review:
        self.require_auth()
        logger.info(f"> gitlab update !{review_id}")
        body: Dict[str, Any] = {}
        if params.description is not None:
            body["description"] = params.description
        if params.target_branch is not None:
            body["target_branch"] = params.target_branch
        if params.title is not None or params.draft is not None:
            title = params.title
            draft = params.draft
            if title is None or draft is None:
                current = self.get_review(review_id)
                title = current.title if title is None else title
                draft = current.draft if draft is None else draft
            body["title"] = draft_title(title, draft)
        if not body:
            return self.get_review(review_id)
        data = self._request("PUT", f"{self._project_api}/merge_requests/{review_id}",
                             f"update merge request !{review_id}", json=body)
        return self._to_review(data)

    def get_review(self, review_id: str) -> Review:
        self.require_auth()
        data = self._request("GET", f"{self._project_api}/merge_requests/{review_id}",
                             f"fetch merge request !{review_id}")
        return self._to_review(data)

    def find_review_for_branch(self, branch: str) -> Optional[Review]:
        self.require_auth()
        data = self._request("GET", f"{self._project_api}/merge_requests",
                             f"search merge requests for {branch}",
                             params={"source_branch": branch, "state": "opened"})
        for item in data or []:
            if item.get("source_branch") == branch:
                return self._to_review(item)
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        message = data.get("message") or data.get("error") or data
        return str(message)
    return str(data)
