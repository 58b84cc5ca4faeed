"""Types shared by all review providers."""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional

from pydantic import BaseModel

from ..errors import UnknownProviderError, ProviderDetectionFailedError


class ProviderType(str, Enum):
    """Supported hosting backends."""
    GITLAB = "gitlab"
    GITHUB = "github"

    @classmethod
    def from_str(cls, value: str) -> "ProviderType":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise UnknownProviderError(value)

    @classmethod
    def from_remote_url(cls, url: str) -> "ProviderType":
        """Guess the provider from a remote URL's host."""
        lowered = url.lower()
        if "gitlab" in lowered:
            return cls.GITLAB
        if "github.com" in lowered:
            return cls.GITHUB
        raise ProviderDetectionFailedError(url)

    @property
    def display_name(self) -> str:
        return {"gitlab": "GitLab", "github": "GitHub"}[self.value]

    @property
    def cli_name(self) -> str:
        return {"gitlab": "glab", "github": "gh"}[self.value]

    @property
    def auth_command(self) -> str:
        return f"{self.cli_name} auth login"

    @property
    def token_env_vars(self) -> tuple:
        return {"gitlab": ("GITLAB_TOKEN",), "github": ("GITHUB_TOKEN", "GH_TOKEN")}[self.value]

    @property
    def required_scope(self) -> str:
        return {"gitlab": "api", "github": "repo"}[self.value]

    @property
    def token_help_url(self) -> str:
        return {
            "gitlab": "https://gitlab.com/-/user_settings/personal_access_tokens",
            "github": "https://github.com/settings/tokens",
        }[self.value]

    def __str__(self) -> str:
        return self.value


class ReviewState(str, Enum):
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


class Review(BaseModel):
    """Provider-side review (merge request / pull request) snapshot."""
    id: str
    url: str
    title: str
    description: str = ""
    source_branch: str
    target_branch: str
    draft: bool = False
    state: ReviewState = ReviewState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state == ReviewState.OPEN


@dataclass
class CreateReviewParams:
    source_branch: str
    target_branch: str
    title: str
    description: str = ""
    draft: bool = True


@dataclass
class UpdateReviewParams:
    """Fields left as None are not changed."""
    title: Optional[str] = None
    description: Optional[str] = None
    target_branch: Optional[str] = None
    draft: Optional[bool] = None


@dataclass
class Credential:
    """A verified bearer token."""
    token: str
    scopes: FrozenSet[str] = field(default_factory=frozenset)
    valid: bool = True
    source: str = "unknown"

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    def __repr__(self) -> str:
        # Never show the token itself
        return f"Credential(scopes={sorted(self.scopes)}, valid={self.valid}, source={self.source!r})"
