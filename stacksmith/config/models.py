"""Pydantic models for config types."""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

class RepoConfig(BaseModel):
    """Repository configuration."""
    model_config = ConfigDict(extra="allow")

    remote: str = "origin"
    base_branch: Optional[str] = None  # None = use the base branch recorded at init
    provider: Optional[str] = None  # None = detect from remote URL
    draft: bool = True
    show_stack_in_description: bool = True
    required_scope: Optional[str] = None  # None = provider default

class UserConfig(BaseModel):
    """User configuration."""
    model_config = ConfigDict(extra="allow")

    log_git_commands: bool = True
    interactive_auth: bool = True

class ToolConfig(BaseModel):
    """Tool configuration."""
    model_config = ConfigDict(extra="allow")

    pretend: bool = False
    retry_backoff_seconds: float = 2.0

class StacksmithConfig(BaseModel):
    """Full stacksmith configuration."""
    model_config = ConfigDict(extra="allow")

    repo: RepoConfig = Field(default_factory=RepoConfig)
    user: UserConfig = Field(default_factory=UserConfig)
    tool: ToolConfig = Field(default_factory=ToolConfig)
