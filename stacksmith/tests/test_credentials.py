"""Tests for the credential resolution chain."""

from pathlib import Path
from typing import Dict, List, Optional

import pytest
import yaml

from stacksmith.credentials import CredentialResolver, read_cli_config_token
from stacksmith.errors import CredentialResolutionError, RejectedProviderError, TransientProviderError
from stacksmith.metadata import MetadataStore, RepositoryMetadata
from stacksmith.providers import ProviderType
from stacksmith.tests.helpers import FakeProvider


def make_metadata(token: Optional[str] = None) -> RepositoryMetadata:
    return RepositoryMetadata(provider="gitlab", base_branch="main",
                              base_url="https://gitlab.example.com", project_path="group/project",
                              auth_token=token)


def make_resolver(provider: FakeProvider, metadata: RepositoryMetadata, tmp_path: Path,
                  store: Optional[MetadataStore] = None, env: Optional[Dict[str, str]] = None,
                  helper_token: Optional[str] = None, prompted: Optional[str] = None,
                  interactive: bool = False) -> CredentialResolver:
    return CredentialResolver(
        provider, metadata, store=store, interactive=interactive,
        env=env or {},
        cli_config=tmp_path / "glab-cli" / "config.yml",
        git_credential=lambda host: helper_token,
        prompt=lambda provider_type, host: prompted,
    )


def write_glab_config(tmp_path: Path, host: str, token: str) -> None:
    path = tmp_path / "glab-cli" / "config.yml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump({"hosts": {host: {"token": token, "api_protocol": "https"}}}))


def test_valid_stored_token_short_circuits(tmp_path: Path) -> None:
    provider = FakeProvider(tokens={"stored": {"api"}, "env": {"api"}})
    metadata = make_metadata("stored")

    credential = make_resolver(provider, metadata, tmp_path, env={"GITLAB_TOKEN": "env"}).resolve()

    assert credential.source == "stored token"
    assert provider.active_token == "stored"
    assert provider.calls == [("verify_scopes",)]


def test_expired_stored_token_falls_through_and_is_overwritten(tmp_path: Path) -> None:
    provider = FakeProvider(tokens={"fresh": {"api", "read_user"}})
    store = MetadataStore(tmp_path / "git")
    metadata = make_metadata("expired")
    with store.lock():
        store.save(metadata)

    write_glab_config(tmp_path, "gitlab.example.com", "fresh")
    credential = make_resolver(provider, metadata, tmp_path, store=store).resolve()

    assert credential.source == "glab config"
    assert credential.has_scope("api")
    assert metadata.auth_token == "fresh"
    assert store.load().auth_token == "fresh"
    assert not store.lock_path.exists()


def test_stored_token_missing_scope_is_rejected(tmp_path: Path) -> None:
    provider = FakeProvider(tokens={"read-only": {"read_api"}})
    metadata = make_metadata("read-only")

    with pytest.raises(CredentialResolutionError) as exc_info:
        make_resolver(provider, metadata, tmp_path).resolve()

    message = str(exc_info.value)
    assert "stored token: missing scope 'api'" in message
    assert provider.credential is None
    assert metadata.auth_token == "read-only"


def test_missing_scope_falls_through_to_next_source(tmp_path: Path) -> None:
    provider = FakeProvider(tokens={"read-only": {"read_api"}, "full": {"api"}})
    metadata = make_metadata("read-only")

    credential = make_resolver(provider, metadata, tmp_path, env={"GITLAB_TOKEN": "full"}).resolve()

    assert credential.source == "environment"
    assert metadata.auth_token == "full"


def test_credential_helper_used_after_cli_config(tmp_path: Path) -> None:
    provider = FakeProvider(tokens={"helper": {"api"}})

    credential = make_resolver(provider, make_metadata(), tmp_path, helper_token="helper").resolve()

    assert credential.source == "git credential helper"


def test_interactive_stage_only_when_enabled(tmp_path: Path) -> None:
    provider = FakeProvider(tokens={"typed": {"api"}})

    with pytest.raises(CredentialResolutionError) as exc_info:
        make_resolver(provider, make_metadata(), tmp_path, prompted="typed").resolve()
    assert "interactive:" not in str(exc_info.value)

    credential = make_resolver(provider, make_metadata(), tmp_path, prompted="typed",
                               interactive=True).resolve()
    assert credential.source == "interactive"


def test_skip_stored_ignores_valid_stored_token(tmp_path: Path) -> None:
    provider = FakeProvider(tokens={"stored": {"api"}, "env": {"api"}})
    metadata = make_metadata("stored")

    credential = make_resolver(provider, metadata, tmp_path, env={"GITLAB_TOKEN": "env"}).resolve(skip_stored=True)

    assert credential.source == "environment"
    assert metadata.auth_token == "env"


def test_same_token_is_not_verified_twice(tmp_path: Path) -> None:
    provider = FakeProvider(tokens={})
    metadata = make_metadata("bad")

    with pytest.raises(CredentialResolutionError) as exc_info:
        make_resolver(provider, metadata, tmp_path, env={"GITLAB_TOKEN": "bad"}).resolve()

    assert provider.calls == [("verify_scopes",)]
    assert "environment: same token as stored token" in str(exc_info.value)


def test_transient_failure_is_not_treated_as_bad_token(tmp_path: Path) -> None:
    class FlakyProvider(FakeProvider):
        def verify_scopes(self, token: str):
            raise TransientProviderError("GitLab could not verify token: HTTP 503", status=503)

    metadata = make_metadata("stored")
    with pytest.raises(TransientProviderError):
        make_resolver(FlakyProvider(), metadata, tmp_path, env={"GITLAB_TOKEN": "env"}).resolve()


def test_refused_token_falls_through_to_next_source(tmp_path: Path) -> None:
    class SsoProvider(FakeProvider):
        def verify_scopes(self, token: str):
            if token == "sso-blocked":
                self.calls.append(("verify_scopes",))
                raise RejectedProviderError("GitHub could not verify token: Resource protected by SAML",
                                            status=403)
            return super().verify_scopes(token)

    provider = SsoProvider(tokens={"env": {"api"}})
    metadata = make_metadata("sso-blocked")

    credential = make_resolver(provider, metadata, tmp_path, env={"GITLAB_TOKEN": "env"}).resolve()

    assert credential.source == "environment"
    assert metadata.auth_token == "env"
    assert len(provider.calls) == 2


def test_github_cli_config_layout(tmp_path: Path) -> None:
    path = tmp_path / "hosts.yml"
    path.write_text(yaml.safe_dump({"github.com": {"oauth_token": "gho_abc", "user": "someone"}}))

    assert read_cli_config_token(ProviderType.GITHUB, "github.com", path) == "gho_abc"
    assert read_cli_config_token(ProviderType.GITHUB, "ghe.example.com", path) is None


def test_cli_config_missing_or_broken(tmp_path: Path) -> None:
    assert read_cli_config_token(ProviderType.GITLAB, "gitlab.com", tmp_path / "absent.yml") is None

    broken = tmp_path / "config.yml"
    broken.write_text("hosts: [oops")
    assert read_cli_config_token(ProviderType.GITLAB, "gitlab.com", broken) is None


def test_github_env_vars_checked_in_order(tmp_path: Path) -> None:
    provider = FakeProvider(tokens={"gh-token": {"repo"}}, provider_type=ProviderType.GITHUB,
                            base_url="https://github.com", project_path="owner/repo")
    seen: List[str] = []
    resolver = CredentialResolver(provider, make_metadata(), env={"GH_TOKEN": "gh-token"},
                                  cli_config=tmp_path / "hosts.yml",
                                  git_credential=lambda host: seen.append(host) or None)

    credential = resolver.resolve()

    assert credential.source == "environment"
    assert seen == []
