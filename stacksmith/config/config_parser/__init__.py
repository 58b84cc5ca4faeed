"""Config parser logic."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ...errors import GitError
from ...typing import GitInterface

# Get module logger
logger = logging.getLogger(__name__)

RawConfig = Dict[str, Dict[str, Any]]

CONFIG_FILENAME = ".stacksmith.yaml"

def parse_config(git_cmd: GitInterface, repo_root: Optional[Path] = None) -> RawConfig:
    """Parse config from the repository config file over built-in defaults."""
    config: RawConfig = {
        'repo': {
            'remote': 'origin',
            'draft': True,
            'show_stack_in_description': True,
        },
        'user': {},
        'tool': {
            'pretend': False,
        },
    }

    if repo_root is None:
        try:
            repo_root = Path(git_cmd.must_git("rev-parse --show-toplevel").strip())
        except GitError as e:
            logger.debug(f"Could not find repository root: {e}")
            return config

    config_path = repo_root / CONFIG_FILENAME
    try:
        with open(config_path, 'r') as f:
            logger.info(f"Found {CONFIG_FILENAME}, loading...")
            repo_config = yaml.safe_load(f)
    except FileNotFoundError:
        logger.debug(f"No {CONFIG_FILENAME} found, using defaults")
        return config

    logger.debug(f"Config from {CONFIG_FILENAME}: {repo_config}")
    if isinstance(repo_config, dict):
        for section in ('repo', 'user', 'tool'):
            if isinstance(repo_config.get(section), dict):
                config[section].update(repo_config[section])
    return config


@dataclass(frozen=True)
class RemoteInfo:
    """Hosting details derived from a git remote URL."""
    host: str
    base_url: str
    project_path: str


_SCP_LIKE = re.compile(r'^(?:[^@/]+@)?(?P<host>[^:/]+):(?P<path>[^/].*)$')
_URL_LIKE = re.compile(r'^(?P<scheme>[a-z+]+)://(?:[^@/]+@)?(?P<host>[^/:]+)(?::\d+)?/(?P<path>.+)$')

def parse_remote_url(url: str) -> RemoteInfo:
    """Split a remote URL into host, web base URL and project path.

    Handles ``git@host:group/repo.git``, ``ssh://git@host/group/repo.git``
    and ``https://host/group/sub/repo.git``.
    """
    url = url.strip()
    match = _URL_LIKE.match(url)
    if match:
        scheme = match.group('scheme')
        host = match.group('host')
        path = match.group('path')
        web_scheme = 'http' if scheme == 'http' else 'https'
    else:
        match = _SCP_LIKE.match(url)
        if not match:
            raise ValueError(f"Unrecognized remote URL: {url}")
        host = match.group('host')
        path = match.group('path')
        web_scheme = 'https'

    path = path.strip('/')
    if path.endswith('.git'):
        path = path[:-len('.git')]
    if '/' not in path:
        raise ValueError(f"Remote URL has no owner/project path: {url}")
    return RemoteInfo(host=host, base_url=f"{web_scheme}://{host}", project_path=path)
