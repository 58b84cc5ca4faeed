"""CLI entry point."""

import os
import signal
import sys
import logging
from contextlib import contextmanager
from types import FrameType
from typing import Any, Dict, Iterator, List, Optional, Tuple

import click
from click import Context

from ...config import Config, default_config
from ...config.config_parser import parse_config, parse_remote_url
from ...context import EngineContext
from ...credentials import CredentialResolver
from ...errors import (
    AlreadyInitializedError, ProviderDetectionFailedError, RebaseConflictError,
    RebaseInProgressError, StackError, UncommittedChangesError,
)
from ...git import (
    RealGit, detect_default_branch, get_remote_url, has_uncommitted_changes,
    is_rebase_in_progress, list_local_branches,
)
from ...metadata import RepositoryMetadata
from ...pretty import print_header, print_json, table
from ...providers import ProviderType, ReviewProvider
from ...restack import RestackOrchestrator, RestackReport, RestackStateFile, push_queued
from ...stack import Stack, detect
from ...submit import SubmissionPipeline, SubmissionReport

# Get module logger
logger = logging.getLogger(__name__)


class AliasedGroup(click.Group):
    """Command group with support for aliases."""

    def __init__(self, name: Optional[str] = None, commands: Optional[Dict[str, click.Command]] = None, **attrs: Any) -> None:
        super().__init__(name, commands, **attrs)
        self.aliases: Dict[str, str] = {}

    def add_alias(self, alias: str, command: str) -> None:
        self.aliases[alias] = command

    def get_command(self, ctx: Context, cmd_name: str) -> Optional[click.Command]:
        """Get a command by name, supporting aliases."""
        if cmd_name in self.aliases:
            cmd_name = self.aliases[cmd_name]
        return super().get_command(ctx, cmd_name)


@click.group(cls=AliasedGroup)
@click.pass_context
def cli(ctx: Context) -> None:
    """stk - stacked branches as stacked reviews on GitLab and GitHub."""
    ctx.obj = {}


@contextmanager
def handle_errors() -> Iterator[None]:
    """Report engine errors with their remedy and exit non-zero."""
    try:
        yield
    except StackError as e:
        logger.error(f"{e}")
        sys.exit(1)


@contextmanager
def cancel_on_interrupt(engine: EngineContext) -> Iterator[None]:
    """First Ctrl-C stops after the current branch; a second one interrupts."""
    def handler(signum: int, frame: Optional[FrameType]) -> None:
        if engine.cancel_event.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupted - stopping after the current branch (Ctrl-C again to force)")
        engine.cancel_event.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def setup_git(directory: Optional[str] = None) -> Tuple[Config, RealGit]:
    """Setup Git command and config."""
    if directory:
        os.chdir(directory)

    # Check git dir; raises NotInGitRepositoryError outside a repository
    git_cmd = RealGit(default_config())
    git_cmd.repo

    cfg = parse_config(git_cmd)
    config = Config(cfg)
    return config, RealGit(config)


def setup_engine(directory: Optional[str], pretend: bool = False) -> EngineContext:
    config, git_cmd = setup_git(directory)
    if pretend:
        config.tool.pretend = True
    return EngineContext.for_repo(config, git_cmd, interactive=config.user.interactive_auth)


def load_metadata(engine: EngineContext) -> RepositoryMetadata:
    live = [b.name for b in list_local_branches(engine.git_cmd)]
    return engine.store.load(live_branches=live)


def check_environment(engine: EngineContext) -> None:
    """Refuse to touch branches mid-rebase or with a dirty tree."""
    if is_rebase_in_progress(engine.git_cmd):
        raise RebaseInProgressError()
    if has_uncommitted_changes(engine.git_cmd):
        raise UncommittedChangesError()


def authenticate(engine: EngineContext, metadata: RepositoryMetadata,
                 skip_stored: bool = False) -> ReviewProvider:
    provider = engine.provider_for(metadata)
    CredentialResolver(provider, metadata, engine.store, engine.interactive).resolve(skip_stored)
    return provider


def common_options(f: Any) -> Any:
    f = click.option('-v', '--verbose', count=True,
                     help="Increase verbosity (can be used multiple times for more verbosity)")(f)
    f = click.option('-C', '--directory', type=click.Path(exists=True, file_okay=False, dir_okay=True),
                     help='Run as if stk was started in DIRECTORY instead of the current working directory')(f)
    return f


@cli.command(name="init", help="Set up stacksmith metadata for this repository")
@common_options
@click.option('--provider', type=click.Choice([p.value for p in ProviderType]),
              help="Review provider (detected from the remote URL by default)")
@click.option('--base-branch', help="Base branch stacks are built on (detected by default)")
@click.option('--skip-auth', is_flag=True, help="Do not look for a token now")
def init(directory: Optional[str], verbose: int, provider: Optional[str],
         base_branch: Optional[str], skip_auth: bool) -> None:
    from ... import setup_logging
    setup_logging(verbose)

    with handle_errors():
        engine = setup_engine(directory)
        if engine.store.exists():
            raise AlreadyInitializedError(engine.store.path)

        url = get_remote_url(engine.git_cmd, engine.remote)
        try:
            remote = parse_remote_url(url)
        except ValueError:
            raise ProviderDetectionFailedError(url)
        provider_type = ProviderType.from_str(provider) if provider else ProviderType.from_remote_url(remote.host)
        base = base_branch or detect_default_branch(engine.git_cmd, engine.remote)

        metadata = RepositoryMetadata(provider=provider_type.value, base_branch=base,
                                      base_url=remote.base_url, project_path=remote.project_path)
        with engine.store.lock():
            engine.store.save(metadata)
            logger.info(f"Initialized {provider_type.display_name} stacks on '{base}' "
                        f"for {remote.project_path}")
            if not skip_auth:
                authenticate(engine, metadata)

    click.echo(f"Initialized stacksmith: provider={provider_type.value} base={base} "
               f"project={remote.project_path}")


@cli.command(name="auth", help="Find a new token and store it, ignoring the stored one")
@common_options
def auth(directory: Optional[str], verbose: int) -> None:
    from ... import setup_logging
    setup_logging(verbose)

    with handle_errors():
        engine = setup_engine(directory)
        with engine.store.lock():
            metadata = load_metadata(engine)
            provider = authenticate(engine, metadata, skip_stored=True)
    credential = provider.credential
    if credential is not None:
        click.echo(f"Authenticated with {provider.provider_type.display_name} "
                   f"(from {credential.source}; scopes: {', '.join(sorted(credential.scopes))})")


def print_submission(report: SubmissionReport) -> None:
    rows = [[r.branch, r.target, r.status.value, r.review_url or r.error or ""] for r in report.results]
    print_header("Submitted stack")
    click.echo(table(rows, ["BRANCH", "TARGET", "STATUS", "REVIEW"]))


@cli.command(name="submit", help="Push every branch of the stack and create or update its review")
@common_options
@click.argument('branch', required=False)
@click.option('--ready', is_flag=True, help="Create new reviews as ready instead of draft")
@click.option('--pretend', is_flag=True, help="Don't actually push or create/update reviews, just show what would happen")
def submit(directory: Optional[str], verbose: int, branch: Optional[str], ready: bool, pretend: bool) -> None:
    from ... import setup_logging
    setup_logging(verbose)

    with handle_errors():
        engine = setup_engine(directory, pretend)
        config = engine.config
        with engine.store.lock():
            metadata = load_metadata(engine)
            check_environment(engine)
            stack = detect(engine.git_cmd, branch, engine.base_branch(metadata))
            provider = engine.provider_for(metadata) if config.tool.pretend else authenticate(engine, metadata)
            pipeline = SubmissionPipeline(
                engine.git_cmd, engine.store, metadata, provider,
                remote=engine.remote,
                draft=config.repo.draft and not ready,
                show_stack=config.repo.show_stack_in_description,
                pretend=config.tool.pretend,
                cancel_event=engine.cancel_event,
                backoff=config.tool.retry_backoff_seconds,
            )
            with cancel_on_interrupt(engine):
                report = pipeline.submit(stack)

    print_submission(report)
    if not report.ok:
        sys.exit(1)


def print_restack(report: RestackReport) -> None:
    rows = []
    for b in report.branches:
        moved = f"{b.old_tip[:8]} -> {b.new_tip[:8]}" if b.changed and b.new_tip else b.old_tip[:8]
        pushed = "pushed" if b.name in report.pushed else ""
        rows.append([b.name, b.state.value, moved, pushed])
    print_header(f"Restack onto {report.base_branch}")
    click.echo(table(rows, ["BRANCH", "STATE", "TIP", ""]))


@cli.command(name="restack", help="Rebase every branch of the stack onto its updated parent. "
             "A branch whose recorded parent was amended is moved onto the amended parent.")
@common_options
@click.argument('branch', required=False)
@click.option('--continue', 'continue_', is_flag=True, help="Resume after resolving a conflict")
@click.option('--abort', is_flag=True, help="Abandon the restack and restore every branch")
@click.option('--push', is_flag=True, help="Force-push rewritten branches when the restack completes")
@click.option('--pretend', is_flag=True, help="Don't actually push, just show what would happen")
def restack(directory: Optional[str], verbose: int, branch: Optional[str], continue_: bool,
            abort: bool, push: bool, pretend: bool) -> None:
    from ... import setup_logging
    setup_logging(verbose)

    if continue_ and abort:
        raise click.UsageError("--continue and --abort are mutually exclusive")

    with handle_errors():
        engine = setup_engine(directory, pretend)
        with engine.store.lock():
            metadata = load_metadata(engine)
            state_file = RestackStateFile(engine.store.dir)
            orchestrator = RestackOrchestrator(engine.git_cmd, state_file, engine.cancel_event)

            if abort or continue_:
                if not state_file.exists():
                    raise StackError("No restack in progress.", "Start one with 'stk restack'.")
                if abort:
                    orchestrator.abort()
                    click.echo("Restack aborted; all branches restored.")
                    return
                with cancel_on_interrupt(engine):
                    report = orchestrator.resume()
            else:
                if state_file.exists():
                    raise StackError("A restack is already in progress.",
                                     "Run 'stk restack --continue' or 'stk restack --abort'.")
                check_environment(engine)
                stack = detect(engine.git_cmd, branch, engine.base_branch(metadata))
                with cancel_on_interrupt(engine):
                    report = orchestrator.start(stack, metadata)

            conflict = report.conflict
            if conflict is not None:
                print_restack(report)
                raise RebaseConflictError(conflict.name, conflict.conflict_path)
            if report.cancelled:
                print_restack(report)
                raise StackError("Restack cancelled.",
                                 "Run 'stk restack --continue' to finish or 'stk restack --abort'.")
            if push:
                push_queued(engine.git_cmd, engine.remote, report)

    print_restack(report)


def status_document(stack: Stack, metadata: RepositoryMetadata) -> Dict[str, Any]:
    branches: List[Dict[str, Any]] = []
    for b in stack:
        entry = metadata.get_branch(b.name)
        branches.append({
            "name": b.name,
            "tip": b.tip,
            "parent": stack.parent_of(b.name),
            "upstream": b.upstream,
            "review_id": entry.review_id if entry else None,
            "review_url": entry.review_url if entry else None,
            "recorded_parent": entry.parent if entry else None,
        })
    return {
        "provider": metadata.provider,
        "base_branch": stack.base_branch,
        "branches": branches,
        "stale": sorted(metadata.stale_branches),
    }


@cli.command(name="status", help="Show the current stack and its reviews")
@common_options
@click.argument('branch', required=False)
@click.option('--json', 'as_json', is_flag=True, help="Emit JSON instead of a table")
def status(directory: Optional[str], verbose: int, branch: Optional[str], as_json: bool) -> None:
    from ... import setup_logging
    setup_logging(verbose)

    with handle_errors():
        engine = setup_engine(directory)
        metadata = load_metadata(engine)
        stack = detect(engine.git_cmd, branch, engine.base_branch(metadata))

    doc = status_document(stack, metadata)
    if as_json:
        print_json(doc)
        return

    rows = []
    for b in reversed(doc["branches"]):
        review = b["review_url"] or "(not submitted)"
        if b["recorded_parent"] and b["recorded_parent"] != b["parent"]:
            review += f"  [was on {b['recorded_parent']}]"
        rows.append([b["name"], b["tip"][:8], b["parent"], review])
    print_header(f"Stack on {doc['base_branch']} ({doc['provider']})")
    click.echo(table(rows, ["BRANCH", "TIP", "PARENT", "REVIEW"]))
    for name in doc["stale"]:
        click.echo(f"warning: metadata for '{name}' refers to a branch that no longer exists")


cli.add_alias('st', 'status')
cli.add_alias('rs', 'restack')


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
