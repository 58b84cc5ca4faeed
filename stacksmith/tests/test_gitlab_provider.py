"""Tests for the GitLab provider using httpx's mock transport."""

import json
from typing import Callable, Dict, List

import httpx
import pytest

from stacksmith.errors import (
    AuthenticationFailedError, MissingScopeError, RejectedProviderError, TransientProviderError,
)
from stacksmith.providers import CreateReviewParams, ReviewState, UpdateReviewParams
from stacksmith.providers.gitlab import GitLabProvider, draft_title, strip_draft

PROJECT_API = "/api/v4/projects/group%2Fsub%2Fproject"


def mr_payload(iid: int = 7, title: str = "Draft: Add A", draft: bool = True,
               state: str = "opened", target: str = "main") -> Dict[str, object]:
    return {
        "iid": iid,
        "web_url": f"https://gitlab.example.com/group/sub/project/-/merge_requests/{iid}",
        "title": title,
        "description": "body",
        "source_branch": "A",
        "target_branch": target,
        "draft": draft,
        "state": state,
    }


class Recorder:
    """Route table for MockTransport that remembers every request."""

    def __init__(self, routes: Dict[str, Callable[[httpx.Request], httpx.Response]]):
        self.routes = routes
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = f"{request.method} {request.url.raw_path.decode().split('?')[0]}"
        if key not in self.routes:
            return httpx.Response(404, json={"message": "404 Not Found"})
        return self.routes[key](request)


def token_route(scopes: List[str], active: bool = True) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(200, json={"id": 1, "name": "stk", "scopes": scopes,
                                                     "active": active, "revoked": False})


def make_provider(routes: Dict[str, Callable[[httpx.Request], httpx.Response]],
                  authenticate: bool = True) -> "tuple[GitLabProvider, Recorder]":
    recorder = Recorder(routes)
    provider = GitLabProvider("https://gitlab.example.com", "group/sub/project",
                              transport=httpx.MockTransport(recorder))
    if authenticate:
        routes.setdefault("GET /api/v4/personal_access_tokens/self", token_route(["api"]))
        provider.authenticate("glpat-test")
    return provider, recorder


def test_authenticate_reads_scopes_and_caches() -> None:
    provider, recorder = make_provider({"GET /api/v4/personal_access_tokens/self":
                                        token_route(["api", "read_user"])}, authenticate=False)

    credential = provider.authenticate("glpat-test")
    provider.authenticate("glpat-test")

    assert credential.scopes == frozenset({"api", "read_user"})
    assert len(recorder.requests) == 1
    assert recorder.requests[0].headers["PRIVATE-TOKEN"] == "glpat-test"


def test_token_without_api_scope_is_rejected() -> None:
    provider, _ = make_provider({"GET /api/v4/personal_access_tokens/self": token_route(["read_api"])},
                                authenticate=False)

    with pytest.raises(MissingScopeError) as exc_info:
        provider.authenticate("glpat-test")
    assert exc_info.value.required == "api"
    assert provider.credential is None


def test_inactive_token_is_expired() -> None:
    provider, _ = make_provider({"GET /api/v4/personal_access_tokens/self": token_route(["api"], active=False)},
                                authenticate=False)

    with pytest.raises(AuthenticationFailedError):
        provider.authenticate("glpat-test")


def test_unauthorized_token() -> None:
    provider, _ = make_provider({"GET /api/v4/personal_access_tokens/self":
                                 lambda r: httpx.Response(401, json={"message": "401 Unauthorized"})},
                                authenticate=False)

    with pytest.raises(AuthenticationFailedError):
        provider.authenticate("glpat-test")


def test_create_review_sends_draft_title_to_encoded_project() -> None:
    provider, recorder = make_provider({
        f"POST {PROJECT_API}/merge_requests": lambda r: httpx.Response(201, json=mr_payload()),
    })

    review = provider.create_review(CreateReviewParams(source_branch="A", target_branch="main",
                                                       title="Add A", description="body", draft=True))

    body = json.loads(recorder.requests[-1].content)
    assert body == {"source_branch": "A", "target_branch": "main", "title": "Draft: Add A",
                    "description": "body"}
    assert review.id == "7"
    assert review.title == "Add A"
    assert review.draft
    assert review.state == ReviewState.OPEN


def test_update_keeps_draft_prefix_when_title_changes() -> None:
    provider, recorder = make_provider({
        f"PUT {PROJECT_API}/merge_requests/7": lambda r: httpx.Response(
            200, json=mr_payload(title="Draft: New title", target="B")),
    })

    review = provider.update_review("7", UpdateReviewParams(title="New title", description="d",
                                                            target_branch="B", draft=True))

    body = json.loads(recorder.requests[-1].content)
    assert body == {"description": "d", "target_branch": "B", "title": "Draft: New title"}
    assert review.target_branch == "B"


def test_update_without_draft_flag_reads_current_state() -> None:
    provider, recorder = make_provider({
        f"GET {PROJECT_API}/merge_requests/7": lambda r: httpx.Response(200, json=mr_payload(draft=False, title="Old")),
        f"PUT {PROJECT_API}/merge_requests/7": lambda r: httpx.Response(200, json=mr_payload(draft=False, title="New")),
    })

    provider.update_review("7", UpdateReviewParams(title="New"))

    assert json.loads(recorder.requests[-1].content) == {"title": "New"}


def test_merged_state_is_reported() -> None:
    provider, _ = make_provider({
        f"GET {PROJECT_API}/merge_requests/7": lambda r: httpx.Response(200, json=mr_payload(state="merged")),
    })

    review = provider.get_review("7")

    assert review.state == ReviewState.MERGED
    assert not review.is_open


def test_find_review_for_branch_filters_by_source() -> None:
    provider, recorder = make_provider({
        f"GET {PROJECT_API}/merge_requests": lambda r: httpx.Response(200, json=[mr_payload()]),
    })

    review = provider.find_review_for_branch("A")

    assert review is not None and review.id == "7"
    assert recorder.requests[-1].url.params["source_branch"] == "A"
    assert recorder.requests[-1].url.params["state"] == "opened"


def test_server_error_is_transient() -> None:
    provider, _ = make_provider({
        f"POST {PROJECT_API}/merge_requests": lambda r: httpx.Response(502, text="Bad Gateway"),
    })

    with pytest.raises(TransientProviderError) as exc_info:
        provider.create_review(CreateReviewParams("A", "main", "Add A"))
    assert exc_info.value.status == 502


def test_timeout_is_transient() -> None:
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    provider, _ = make_provider({f"GET {PROJECT_API}/merge_requests/7": timeout})

    with pytest.raises(TransientProviderError):
        provider.get_review("7")


def test_validation_error_is_rejected_with_reason() -> None:
    provider, _ = make_provider({
        f"POST {PROJECT_API}/merge_requests": lambda r: httpx.Response(
            409, json={"message": ["Another open merge request already exists for this source branch"]}),
    })

    with pytest.raises(RejectedProviderError) as exc_info:
        provider.create_review(CreateReviewParams("A", "main", "Add A"))
    assert exc_info.value.status == 409
    assert "already exists" in str(exc_info.value)


def test_calls_require_authentication() -> None:
    provider, recorder = make_provider({}, authenticate=False)

    with pytest.raises(AuthenticationFailedError):
        provider.get_review("7")
    assert recorder.requests == []


def test_draft_title_helpers() -> None:
    assert draft_title("Add A", True) == "Draft: Add A"
    assert draft_title("Draft: Add A", False) == "Add A"
    assert draft_title("Draft: Add A", True) == "Draft: Add A"
    assert strip_draft("WIP: Add A") == "Add A"
