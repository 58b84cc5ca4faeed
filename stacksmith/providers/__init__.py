"""Review provider clients."""

from typing import Optional

from .base import ReviewProvider, with_transient_retry
from .github import GitHubProvider
from .gitlab import GitLabProvider
from .types import (
    CreateReviewParams, Credential, ProviderType, Review, ReviewState, UpdateReviewParams,
)

__all__ = [
    "ReviewProvider", "GitHubProvider", "GitLabProvider", "ProviderType", "Review", "ReviewState",
    "CreateReviewParams", "UpdateReviewParams", "Credential", "create_provider",
    "with_transient_retry", "default_base_url",
]


def default_base_url(provider_type: ProviderType) -> str:
    if provider_type == ProviderType.GITHUB:
        return "https://github.com"
    return "https://gitlab.com"


def create_provider(provider_type: ProviderType, base_url: Optional[str] = None,
                    project_path: Optional[str] = None,
                    required_scope: Optional[str] = None) -> ReviewProvider:
    """Unauthenticated client for provider_type; call authenticate() before use."""
    base_url = base_url or default_base_url(provider_type)
    if provider_type == ProviderType.GITHUB:
        return GitHubProvider(base_url, project_path, required_scope)
    return GitLabProvider(base_url, project_path, required_scope)
