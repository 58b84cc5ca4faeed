"""Tests for the per-invocation engine context."""

import pytest

from stacksmith.config import Config
from stacksmith.context import EngineContext
from stacksmith.errors import ProviderDetectionFailedError
from stacksmith.metadata import RepositoryMetadata
from stacksmith.providers import GitHubProvider, GitLabProvider
from stacksmith.tests.helpers import RepoContext


def test_provider_built_from_metadata_once(repo_ctx: RepoContext) -> None:
    engine = EngineContext.for_repo(Config({}), repo_ctx.git_cmd)
    metadata = RepositoryMetadata(provider="gitlab", base_branch="main",
                                  base_url="https://gitlab.example.com", project_path="group/project")

    provider = engine.provider_for(metadata)

    assert isinstance(provider, GitLabProvider)
    assert provider.project_path == "group/project"
    assert engine.provider_for(metadata) is provider
    assert engine.store.dir.name == "stacksmith"
    assert engine.store.dir.parent.samefile(repo_ctx.git_dir)


def test_missing_cache_falls_back_to_remote_url(repo_ctx: RepoContext) -> None:
    repo_ctx.repo.git.remote("set-url", "origin", "git@github.com:owner/repo.git")
    engine = EngineContext.for_repo(Config({}), repo_ctx.git_cmd)

    provider = engine.provider_for(RepositoryMetadata(provider="github", base_branch="main"))

    assert isinstance(provider, GitHubProvider)
    assert provider.project_path == "owner/repo"
    assert provider.api_url == "https://api.github.com"


def test_unparseable_remote(repo_ctx: RepoContext) -> None:
    engine = EngineContext.for_repo(Config({}), repo_ctx.git_cmd)

    # origin is a local path in scratch repositories
    with pytest.raises(ProviderDetectionFailedError):
        engine.provider_for(RepositoryMetadata(provider="gitlab", base_branch="main"))


def test_config_overrides(repo_ctx: RepoContext) -> None:
    engine = EngineContext.for_repo(Config({"repo": {"base_branch": "develop", "provider": "github"}}),
                                    repo_ctx.git_cmd)
    metadata = RepositoryMetadata(provider="gitlab", base_branch="main",
                                  base_url="https://github.com", project_path="owner/repo")

    assert engine.base_branch(metadata) == "develop"
    assert isinstance(engine.provider_for(metadata), GitHubProvider)
    assert not engine.cancelled
