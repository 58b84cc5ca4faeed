"""Credential resolution.

Tries token sources in priority order until one yields a token the provider
accepts with the required scope:

    1. token stored in the repository metadata
    2. environment variables (GITHUB_TOKEN / GH_TOKEN, GITLAB_TOKEN)
    3. the provider CLI's config file (gh hosts.yml, glab config.yml)
    4. ``git credential fill`` (the system credential helper)
    5. interactive: run the provider CLI's login flow, or paste a token

A stage whose token is missing, expired, lacks the scope or is otherwise refused falls through to
the next one. The winning token is written back to the metadata so later
invocations stop at stage 1.
"""

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import click
import yaml

from ..errors import (
    AuthenticationFailedError, CredentialResolutionError, MissingScopeError, RejectedProviderError,
    TransientProviderError,
)
from ..metadata import MetadataStore, RepositoryMetadata
from ..providers import Credential, ProviderType, ReviewProvider

logger = logging.getLogger(__name__)

GIT_CREDENTIAL_TIMEOUT = 10

TokenSource = Tuple[str, Callable[[], Optional[str]]]


def cli_config_path(provider_type: ProviderType, home: Optional[Path] = None) -> Path:
    """Where the provider's CLI keeps its per-host tokens."""
    config_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(config_home) if config_home and home is None else (home or Path.home()) / ".config"
    if provider_type == ProviderType.GITHUB:
        return base / "gh" / "hosts.yml"
    return base / "glab-cli" / "config.yml"


def read_cli_config_token(provider_type: ProviderType, host: str,
                          path: Optional[Path] = None) -> Optional[str]:
    """Token for host from the gh or glab config file, if present."""
    path = path or cli_config_path(provider_type)
    if not path.exists():
        logger.debug(f"No {provider_type.cli_name} config at {path}")
        return None
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not read {provider_type.cli_name} config {path}: {e}")
        return None
    if not isinstance(data, dict):
        return None

    if provider_type == ProviderType.GITHUB:
        # gh: {host: {oauth_token: ...}}
        entry = data.get(host)
        key = "oauth_token"
    else:
        # glab: {hosts: {host: {token: ...}}}
        entry = (data.get("hosts") or {}).get(host)
        key = "token"
    if isinstance(entry, dict) and isinstance(entry.get(key), str) and entry[key]:
        return entry[key]
    return None


def read_git_credential(host: str, protocol: str = "https") -> Optional[str]:
    """Ask git's configured credential helper for a password for host."""
    request = f"protocol={protocol}\nhost={host}\n\n"
    env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
    try:
        result = subprocess.run(
            ["git", "credential", "fill"],
            input=request,
            capture_output=True,
            text=True,
            timeout=GIT_CREDENTIAL_TIMEOUT,
            env=env,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.debug(f"git credential fill unavailable: {e}")
        return None
    if result.returncode != 0:
        logger.debug(f"git credential fill found nothing for {host}")
        return None
    for line in result.stdout.splitlines():
        if line.startswith("password="):
            return line[len("password="):] or None
    return None


class CredentialResolver:
    """Finds, verifies and stores a token for one provider client."""

    def __init__(self, provider: ReviewProvider, metadata: RepositoryMetadata,
                 store: Optional[MetadataStore] = None, interactive: bool = False,
                 env: Optional[Mapping[str, str]] = None, cli_config: Optional[Path] = None,
                 git_credential: Callable[[str], Optional[str]] = read_git_credential,
                 prompt: Optional[Callable[[ProviderType, str], Optional[str]]] = None):
        self.provider = provider
        self.provider_type = provider.provider_type
        self.metadata = metadata
        self.store = store
        self.interactive = interactive
        self.env = os.environ if env is None else env
        self.cli_config = cli_config
        self.git_credential = git_credential
        self.prompt = prompt or self._prompt_for_token

    def sources(self, skip_stored: bool = False) -> List[TokenSource]:
        host = self.provider.host
        stages: List[TokenSource] = []
        if not skip_stored:
            stages.append(("stored token", lambda: self.metadata.auth_token))
        stages.extend([
            ("environment", self._env_token),
            (f"{self.provider_type.cli_name} config",
             lambda: read_cli_config_token(self.provider_type, host, self.cli_config)),
            ("git credential helper", lambda: self.git_credential(host)),
        ])
        if self.interactive:
            stages.append(("interactive", lambda: self.prompt(self.provider_type, host)))
        return stages

    def _env_token(self) -> Optional[str]:
        for var in self.provider_type.token_env_vars:
            token = self.env.get(var)
            if token:
                logger.debug(f"Found token in ${var}")
                return token
        return None

    def resolve(self, skip_stored: bool = False) -> Credential:
        """Return the first verified credential, writing it back to metadata."""
        attempts: List[str] = []
        tried: Dict[str, str] = {}
        for name, fetch in self.sources(skip_stored):
            token = fetch()
            if not token:
                attempts.append(f"{name}: none")
                continue
            if token in tried:
                attempts.append(f"{name}: same token as {tried[token]}")
                continue
            tried[token] = name
            try:
                credential = self.provider.authenticate(token, source=name)
            except MissingScopeError as e:
                logger.warning(f"Token from {name} lacks scope '{e.required}'")
                attempts.append(f"{name}: missing scope '{e.required}'")
                continue
            except AuthenticationFailedError as e:
                logger.warning(f"Token from {name} was rejected: {e.reason}")
                attempts.append(f"{name}: {e.reason}")
                continue
            except RejectedProviderError as e:
                logger.warning(f"Token from {name} could not be verified: {e.message}")
                attempts.append(f"{name}: {e.message}")
                continue
            except TransientProviderError:
                # Transient failures stop the chain
                raise
            self._persist(credential)
            return credential
        raise CredentialResolutionError(self.provider_type.display_name, attempts)

    def _persist(self, credential: Credential) -> None:
        if self.metadata.auth_token == credential.token:
            return
        self.metadata.auth_token = credential.token
        if self.store is None:
            return
        if self.store.locked:
            self.store.save(self.metadata)
        else:
            with self.store.lock():
                self.store.save(self.metadata)
        logger.info(f"Stored {self.provider_type.display_name} token from {credential.source}")

    def _prompt_for_token(self, provider_type: ProviderType, host: str) -> Optional[str]:
        if not sys.stdin.isatty():
            logger.debug("Not a terminal; skipping interactive authentication")
            return None
        click.echo(f"\nNo usable {provider_type.display_name} token found for {host}.")
        click.echo(f"  1) Run '{provider_type.auth_command}'")
        click.echo("  2) Enter a personal access token")
        choice = click.prompt("Choose", type=click.Choice(["1", "2"]), default="1")
        if choice == "1":
            try:
                subprocess.run([provider_type.cli_name, "auth", "login", "--hostname", host], check=True)
            except (FileNotFoundError, subprocess.CalledProcessError) as e:
                logger.error(f"'{provider_type.auth_command}' failed: {e}")
                return None
            return read_cli_config_token(provider_type, host, self.cli_config)
        click.echo(f"Create a token with the '{self.provider.required_scope}' scope at "
                   f"{provider_type.token_help_url}")
        token = click.prompt("Token", hide_input=True, default="", show_default=False)
        return token.strip() or None
