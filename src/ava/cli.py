from __future__ import annotations

import contextlib
import json
import logging
from pathlib import Path
from typing import Any

import click

from ava import __version__
from ava.accounts import AccountStore
from ava.config import Settings, configure_logging, load_settings
from ava.db import (
    VALID_ISSUE_PROVIDERS,
    VALID_SUBSCRIPTION_STATUSES,
    connect,
    inspect_sqlite_integrity,
)
from ava.engine import Issue, Scope
from ava.errors import AvaError, Err, StorageError
from ava.queries import get_session_detail, list_events, list_sessions
from ava.service import TaskSessionService
from ava.status import STATUS_FILTERS, get_status_reference, normalize_status_filter

log = logging.getLogger(__name__)


class _AvaClickError(click.ClickException):
    """ClickException carrying a typed engine error."""

    def __init__(self, error: AvaError) -> None:
        super().__init__(error.message)
        self.error = error


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr. Every ava
    command prints JSON, so this subclass intercepts Click exceptions and
    emits ``{"ok": false, "error": {...}}`` on stdout instead. Unknown
    commands get fuzzy-matched suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            if isinstance(e, _AvaClickError):
                error = e.error.to_dict()
            elif isinstance(e, click.UsageError):
                error = {"code": "usage", "message": e.format_message()}
            else:
                error = {"code": "error", "message": e.format_message()}
            click.echo(json.dumps({"ok": False, "error": error}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _unwrap(result) -> Any:
    if isinstance(result, Err):
        raise _AvaClickError(result.error)
    return result.value


def _parse_context(ctx: click.Context, param: click.Parameter, value: str | None):
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON ({e.msg})", ctx=ctx, param=param) from None
    if not isinstance(parsed, dict):
        raise click.BadParameter("must be a JSON object", ctx=ctx, param=param)
    return parsed


def _settings() -> Settings:
    return click.get_current_context().find_object(Settings) or load_settings()


def _scope(workspace: str | None, user: str | None, *, require_user: bool = False) -> Scope:
    settings = _settings()
    workspace = workspace or settings.workspace
    user = user or settings.user
    if not workspace:
        raise click.UsageError("No workspace given. Pass --workspace or set AVA_WORKSPACE.")
    if require_user and not user:
        raise click.UsageError("No user given. Pass --user or set AVA_USER.")
    return Scope(workspace_id=workspace, user_id=user)


@contextlib.contextmanager
def _open():
    settings = _settings()
    try:
        with connect(settings.db_path, timeout=settings.db_timeout) as conn:
            yield conn
    except StorageError as e:
        raise _AvaClickError(e) from None


def _not_found(entity: str, identifier: str) -> click.ClickException:
    """Build a ClickException with an actionable suggestion for missing entities."""
    hints = {
        "workspace": "Run 'ava workspace add NAME' to create one.",
        "user": "Run 'ava user list' to see users.",
    }
    msg = f"{entity.title()} '{identifier}' not found."
    hint = hints.get(entity)
    if hint:
        msg += f"\n{hint}"
    return click.ClickException(msg)


def _scope_options(func):
    func = click.option(
        "--user", "-u", default=None, help="User id (default: AVA_USER / config)."
    )(func)
    func = click.option(
        "--workspace", "-w", default=None, help="Workspace id (default: AVA_WORKSPACE / config)."
    )(func)
    return func


_context_option = click.option(
    "--context",
    "raw_context",
    default=None,
    callback=_parse_context,
    help="Structured context as a JSON object.",
)


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--db", "db_path", type=click.Path(path_type=Path), default=None, help="SQLite file.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="TOML config file (default: ~/.config/ava/config.toml).",
)
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR.")
@click.pass_context
def main(ctx: click.Context, db_path: Path | None, config_path: Path | None, log_level: str | None):
    """Track agent task sessions and mirror every transition to chat.

    \b
    Quick start:
      ava workspace add acme --id acme --channel C0123
      ava user add --id u1 --name Ada
      ava session start -w acme -u u1 --title "Fix login" --summary "Starting"
      ava session block SESSION_ID --reason "Waiting on review"
      ava session complete SESSION_ID --pr-url URL --summary "Done"

    \b
    Key concepts:
      session   One unit of agent work, from start to completed/cancelled
      event     Immutable, versioned record of each session transition
      block     Open report of the session being stalled on something external
    """
    try:
        settings = load_settings(config_path, db_path=db_path, log_level=log_level)
    except ValueError as e:
        raise click.UsageError(str(e)) from None
    configure_logging(settings.log_level)
    ctx.obj = settings


# -- help-status --


@main.command("help-status")
def help_status():
    """Show the session status lifecycle and which operations apply to each status."""
    _emit(get_status_reference())


# -- db --


@main.group()
def db():
    """Database maintenance."""


@db.command("check")
def db_check():
    """Run a SQLite integrity check."""
    with _open() as conn:
        report = inspect_sqlite_integrity(conn)
    _emit(report)
    if not report["ok"]:
        raise SystemExit(1)


# -- workspace --


@main.group()
def workspace():
    """Manage workspaces."""


@workspace.command("add")
@click.argument("name")
@click.option("--id", "workspace_id", default=None, help="Explicit workspace id.")
@click.option("--channel", default=None, help="Default notification channel.")
def workspace_add(name: str, workspace_id: str | None, channel: str | None):
    """Create a workspace."""
    with _open() as conn:
        try:
            row = AccountStore(conn).add_workspace(
                name, workspace_id=workspace_id, notification_channel=channel
            )
        except Exception as e:
            raise click.ClickException(str(e)) from e
    _emit(row)


@workspace.command("set-channel")
@click.argument("workspace_id")
@click.argument("channel", required=False)
def workspace_set_channel(workspace_id: str, channel: str | None):
    """Set (or clear, when CHANNEL is omitted) the workspace notification channel."""
    with _open() as conn:
        if not AccountStore(conn).set_notification_channel(workspace_id, channel):
            raise _not_found("workspace", workspace_id)
    _emit({"workspace_id": workspace_id, "notification_channel": channel})


# -- user --


@main.group()
def user():
    """Manage users and their subscriptions."""


@user.command("add")
@click.option("--id", "user_id", default=None, help="Explicit user id.")
@click.option("--name", default=None)
@click.option("--email", default=None)
@click.option("--slack-id", default=None, help="Chat user id, used for mentions.")
def user_add(user_id: str | None, name: str | None, email: str | None, slack_id: str | None):
    """Create a user."""
    with _open() as conn:
        try:
            row = AccountStore(conn).add_user(
                user_id=user_id, name=name, email=email, slack_id=slack_id
            )
        except Exception as e:
            raise click.ClickException(str(e)) from e
    _emit(row)


@user.command("list")
def user_list():
    """List users."""
    with _open() as conn:
        _emit(AccountStore(conn).list_users())


@user.command("subscription")
@click.argument("user_id")
@click.option(
    "--status",
    "sub_status",
    type=click.Choice(sorted(VALID_SUBSCRIPTION_STATUSES)),
    default=None,
    help="Set the subscription status. Omit to show the current one.",
)
@click.option("--period-end", default=None, help="ISO-8601 end of the current period.")
def user_subscription(user_id: str, sub_status: str | None, period_end: str | None):
    """Show or set a user's subscription."""
    with _open() as conn:
        accounts = AccountStore(conn)
        if accounts.get_user(user_id) is None:
            raise _not_found("user", user_id)
        if sub_status:
            accounts.set_subscription(user_id, sub_status, current_period_end=period_end)
        _emit(
            {
                "subscription": accounts.get_subscription(user_id),
                "active": accounts.active_subscription(user_id),
                "session_count": accounts.session_count(user_id),
            }
        )


# -- session --


@main.group()
def session():
    """Start, transition, and inspect task sessions."""


def _service(conn) -> TaskSessionService:
    return TaskSessionService.from_settings(conn, _settings())


@session.command("start")
@_scope_options
@click.option("--title", required=True, help="Issue title.")
@click.option("--summary", required=True, help="Initial summary of the work.")
@click.option(
    "--provider",
    type=click.Choice(VALID_ISSUE_PROVIDERS),
    default="manual",
    show_default=True,
)
@click.option("--issue-id", default=None, help="External issue id (e.g. owner/repo#12).")
@_context_option
def session_start(
    workspace: str | None,
    user: str | None,
    title: str,
    summary: str,
    provider: str,
    issue_id: str | None,
    raw_context: dict | None,
):
    """Start a new task session (subject to the free plan limit)."""
    scope = _scope(workspace, user, require_user=True)
    issue = Issue(provider=provider, title=title, id=issue_id)
    with _open() as conn:
        envelope = _unwrap(_service(conn).start(scope, issue, summary, raw_context))
    _emit({"ok": True, **envelope})


@session.command("update")
@_scope_options
@click.argument("session_id")
@click.option("--summary", required=True)
@_context_option
def session_update(workspace, user, session_id: str, summary: str, raw_context: dict | None):
    """Record a progress update."""
    scope = _scope(workspace, user)
    with _open() as conn:
        envelope = _unwrap(_service(conn).update(scope, session_id, summary, raw_context))
    _emit({"ok": True, **envelope})


@session.command("block")
@_scope_options
@click.argument("session_id")
@click.option("--reason", required=True)
@_context_option
def session_block(workspace, user, session_id: str, reason: str, raw_context: dict | None):
    """Report that the session is blocked."""
    scope = _scope(workspace, user)
    with _open() as conn:
        envelope = _unwrap(_service(conn).report_block(scope, session_id, reason, raw_context))
    _emit({"ok": True, **envelope})


@session.command("unblock")
@_scope_options
@click.argument("session_id")
@click.argument("block_id")
def session_unblock(workspace, user, session_id: str, block_id: str):
    """Resolve an open block report."""
    scope = _scope(workspace, user)
    with _open() as conn:
        envelope = _unwrap(_service(conn).resolve_block(scope, session_id, block_id))
    _emit({"ok": True, **envelope})


@session.command("pause")
@_scope_options
@click.argument("session_id")
@click.option("--reason", required=True)
@_context_option
def session_pause(workspace, user, session_id: str, reason: str, raw_context: dict | None):
    """Pause a session."""
    scope = _scope(workspace, user)
    with _open() as conn:
        envelope = _unwrap(_service(conn).pause(scope, session_id, reason, raw_context))
    _emit({"ok": True, **envelope})


@session.command("resume")
@_scope_options
@click.argument("session_id")
@click.option("--summary", required=True)
@_context_option
def session_resume(workspace, user, session_id: str, summary: str, raw_context: dict | None):
    """Resume a paused session."""
    scope = _scope(workspace, user)
    with _open() as conn:
        envelope = _unwrap(_service(conn).resume(scope, session_id, summary, raw_context))
    _emit({"ok": True, **envelope})


@session.command("complete")
@_scope_options
@click.argument("session_id")
@click.option("--pr-url", required=True, help="Pull request (or other deliverable) URL.")
@click.option("--summary", required=True)
def session_complete(workspace, user, session_id: str, pr_url: str, summary: str):
    """Complete a session. Open blocks are listed but never prevent completion."""
    scope = _scope(workspace, user)
    with _open() as conn:
        envelope = _unwrap(_service(conn).complete(scope, session_id, pr_url, summary))
    _emit({"ok": True, **envelope})


@session.command("cancel")
@_scope_options
@click.argument("session_id")
@click.option("--reason", default=None)
def session_cancel(workspace, user, session_id: str, reason: str | None):
    """Cancel a session."""
    scope = _scope(workspace, user)
    with _open() as conn:
        envelope = _unwrap(_service(conn).cancel(scope, session_id, reason))
    _emit({"ok": True, **envelope})


@session.command("link-thread")
@_scope_options
@click.argument("session_id")
@click.option("--channel", required=True)
@click.option("--thread-ts", required=True, help="Timestamp of the thread root message.")
def session_link_thread(workspace, user, session_id: str, channel: str, thread_ts: str):
    """Record the chat thread that carries this session's notifications."""
    scope = _scope(workspace, user)
    with _open() as conn:
        envelope = _unwrap(_service(conn).link_thread(scope, session_id, channel, thread_ts))
    _emit({"ok": True, **envelope})


@session.command("list")
@_scope_options
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(sorted(STATUS_FILTERS)),
    default=None,
    help="Only sessions in this status.",
)
@click.option("--limit", "-n", type=click.IntRange(min=1), default=50, show_default=True)
def session_list(workspace, user, status_filter: str | None, limit: int):
    """List sessions, most recently updated first."""
    scope = _scope(workspace, user, require_user=True)
    assert scope.user_id is not None
    with _open() as conn:
        rows = list_sessions(
            conn,
            scope.workspace_id,
            scope.user_id,
            status=normalize_status_filter(status_filter),
            limit=limit,
        )
    _emit(rows)


@session.command("events")
@_scope_options
@click.argument("session_id")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=50, show_default=True)
@click.option("--all", "include_technical", is_flag=True, help="Include technical events.")
def session_events(workspace, user, session_id: str, limit: int, include_technical: bool):
    """Show session events, most recent first."""
    scope = _scope(workspace, user)
    with _open() as conn:
        try:
            rows = list_events(
                conn,
                session_id,
                limit=limit,
                include_technical=include_technical,
                scope=scope,
            )
        except AvaError as e:
            raise _AvaClickError(e) from None
    _emit(rows)


@session.command("show")
@_scope_options
@click.argument("session_id")
def session_show(workspace, user, session_id: str):
    """Show a session with its open blocks, completion, and recent events."""
    scope = _scope(workspace, user)
    with _open() as conn:
        try:
            detail = get_session_detail(conn, scope, session_id)
        except AvaError as e:
            raise _AvaClickError(e) from None
    _emit(detail)


# -- notify --


@main.group()
def notify():
    """Inspect dispatched notifications."""


@notify.command("watch")
@click.option("--workspace", "-w", default=None, help="Only this workspace.")
@click.option("--session", "session_id", default=None, help="Only this session.")
@click.option("--from-start", is_flag=True, help="Replay the retained stream first.")
@click.option("--count", type=click.IntRange(min=1), default=None, help="Stop after N messages.")
@click.option("--timeout", type=float, default=30.0, show_default=True, help="Seconds per poll.")
def notify_watch(
    workspace: str | None,
    session_id: str | None,
    from_start: bool,
    count: int | None,
    timeout: float,
):
    """Print dispatched notifications as JSON lines."""
    from ava.queue import NotificationSubscriber, get_redis

    settings = _settings()
    subscriber = NotificationSubscriber(
        get_redis(settings.redis_url, timeout=max(settings.redis_timeout, timeout + 1)),
        workspace_id=workspace,
        session_id=session_id,
        timeout=timeout,
        cursor="0" if from_start else "$",
    )
    seen = 0
    try:
        for message in subscriber:
            if message is None:
                continue
            click.echo(json.dumps(message, default=str))
            seen += 1
            if count is not None and seen >= count:
                break
    except KeyboardInterrupt:
        log.debug("notify watch interrupted")


if __name__ == "__main__":
    main()
