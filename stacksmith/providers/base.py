"""Review provider interface.

Every backend implements the same capability set, so the submission
pipeline never branches on which provider it talks to:

    authenticate() -> verify_scopes()        ← cached per client instance
    create_review() / update_review() / get_review() / find_review_for_branch()

Subclasses implement the raw calls and translate their transport's failures
into TransientProviderError (timeouts, 5xx) or RejectedProviderError (4xx).
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, FrozenSet, Optional, TypeVar

from ..errors import (
    AuthenticationFailedError, MissingScopeError, RejectedProviderError, TransientProviderError,
)
from .types import CreateReviewParams, Credential, ProviderType, Review, UpdateReviewParams

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ReviewProvider(ABC):
    provider_type: ProviderType

    def __init__(self, base_url: str, project_path: Optional[str] = None,
                 required_scope: Optional[str] = None):
        self.base_url = base_url.rstrip('/')
        self.project_path = project_path
        self.required_scope = required_scope or self.provider_type.required_scope
        self._credential: Optional[Credential] = None

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def host(self) -> str:
        return self.base_url.split("://", 1)[-1].split("/", 1)[0]

    def authenticate(self, token: str, source: str = "unknown") -> Credential:
        """Verify token and use it for subsequent calls.

        Idempotent: a token already verified by this instance is not checked
        again.
        """
        if self._credential is not None and self._credential.token == token:
            return self._credential
        scopes = self.verify_scopes(token)
        if self.required_scope not in scopes:
            raise MissingScopeError(self.provider_type.display_name, self.required_scope, scopes)
        credential = Credential(token=token, scopes=scopes, valid=True, source=source)
        self._use_token(token)
        self._credential = credential
        logger.info(f"Authenticated with {self.provider_type.display_name} "
                    f"(token from {source}, scopes: {', '.join(sorted(scopes))})")
        return credential

    def require_auth(self) -> None:
        if self._credential is None:
            raise AuthenticationFailedError(self.provider_type.display_name, "not authenticated")

    def require_project(self) -> str:
        if not self.project_path:
            raise RejectedProviderError(
                f"{self.provider_type.display_name} project path is not set",
                "Re-run 'stk init' from a clone with a configured remote.")
        return self.project_path

    @abstractmethod
    def _use_token(self, token: str) -> None:
        """Configure the underlying client to send token."""

    @abstractmethod
    def verify_scopes(self, token: str) -> FrozenSet[str]:
        """Scopes carried by token. Raises AuthenticationFailedError if invalid or expired."""

    @abstractmethod
    def create_review(self, params: CreateReviewParams) -> Review:
        """Open a new review."""

    @abstractmethod
    def update_review(self, review_id: str, params: UpdateReviewParams) -> Review:
        """Change the given fields of an existing review."""

    @abstractmethod
    def get_review(self, review_id: str) -> Review:
        """Fetch a review by id."""

    @abstractmethod
    def find_review_for_branch(self, branch: str) -> Optional[Review]:
        """Open review whose source is branch, if any."""


def with_transient_retry(call: Callable[[], T], retries: int = 1, backoff: float = 2.0,
                         sleep: Callable[[float], None] = time.sleep, what: str = "provider call") -> T:
    """Run call, retrying TransientProviderError up to retries times.

    Rejected errors are never retried.
    """
    attempt = 0
    while True:
        try:
            return call()
        except TransientProviderError as e:
            if attempt >= retries:
                raise
            delay = backoff * (2 ** attempt)
            attempt += 1
            logger.warning(f"{what} failed transiently ({e.message}); retrying in {delay:.1f}s")
            sleep(delay)
