"""Command-line client for the Token Timer server."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import click
import requests
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import load_config

console = Console()

REQUEST_TIMEOUT = 5

STATE_STYLES = {
    "idle": "dim",
    "running": "green",
    "paused": "yellow",
    "completed": "cyan",
    "ended_early": "magenta",
}


def api_request(base_url: str, method: str, path: str, payload: Optional[dict] = None) -> Any:
    """Call the server and return decoded JSON. Raises ClickException on failure."""
    url = f"{base_url.rstrip('/')}{path}"
    try:
        response = requests.request(method, url, json=payload, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as exc:
        raise click.ClickException(f"Cannot reach Token Timer at {base_url}: {exc}") from exc
    if response.status_code >= 400:
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        raise click.ClickException(f"{response.status_code}: {detail}")
    return response.json()


def format_tokens(count: int) -> str:
    return f"{count} token" if count == 1 else f"{count} tokens"


def format_goal(progress: float) -> str:
    """Ten-cell bar plus percentage, e.g. '[#####.....] 50%'."""
    filled = int(round(max(0.0, min(1.0, progress)) * 10))
    return f"[{'#' * filled}{'.' * (10 - filled)}] {int(progress * 100)}%"


def format_next(value: Optional[str]) -> str:
    if not value:
        return "-"
    return datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M")


def render_status(state: dict) -> Panel:
    timer_state = state.get("state", "idle")
    style = STATE_STYLES.get(timer_state, "white")
    lines = [f"Wallet: [bold]{format_tokens(state.get('balance', 0))}[/bold]"]
    cap = state.get("max_wallet_tokens")
    if cap:
        lines[0] += f" [dim](max {cap})[/dim]"
    lines.append(f"Timer:  [{style}]{timer_state}[/{style}]")
    session = state.get("session")
    if session:
        lines.append(f"Left:   [bold]{state.get('countdown')}[/bold] of {format_tokens(session['original_tokens'])}")
        if session.get("in_grace_period"):
            lines.append("[green]In grace period: ending now refunds everything[/green]")
    return Panel("\n".join(lines), title="Token Timer", border_style="blue", expand=False)


def render_grants(grants: list[dict]) -> Table:
    table = Table(show_header=True, header_style="bold cyan", border_style="blue", expand=False)
    table.add_column("", width=2, justify="center")
    table.add_column("ID", style="dim", width=8)
    table.add_column("Title", style="white", min_width=15)
    table.add_column("Tokens", justify="right")
    table.add_column("Repeats", width=8)
    table.add_column("Cap", justify="right")
    table.add_column("Next", width=16, justify="right")

    for grant in grants:
        marker = "[green]●[/green]" if grant.get("is_active") else "[dim]○[/dim]"
        cap = grant.get("max_wallet_tokens")
        table.add_row(
            marker,
            grant["id"][:8],
            grant.get("title", ""),
            str(grant["token_count"]),
            grant.get("recurrence", "daily"),
            "-" if cap is None else str(cap),
            format_next(grant.get("next_occurrence")),
        )

    if not grants:
        table.add_row(" ", "", "[dim]No scheduled grants[/dim]", "-", "-", "-", "-")
    return table


def _resolve_grant_id(base_url: str, prefix: str) -> str:
    """Accept the short id shown in ``grants list``."""
    grants = api_request(base_url, "GET", "/api/grants")
    matches = [g["id"] for g in grants if g["id"].startswith(prefix)]
    if not matches:
        raise click.ClickException(f"No scheduled grant matching '{prefix}'")
    if len(matches) > 1:
        raise click.ClickException(f"'{prefix}' matches {len(matches)} grants; use more characters")
    return matches[0]


def _print_transition(result: dict, verb: str) -> None:
    returned = result.get("returned_tokens", 0)
    redeemed = result.get("redeemed_tokens", 0)
    if verb == "ended":
        if result.get("was_in_grace_period"):
            console.print(f"[green]Ended within grace period: {format_tokens(returned)} refunded[/green]")
        else:
            console.print(f"Ended early: {format_tokens(returned)} returned, {format_tokens(redeemed)} used")
    else:
        console.print(f"Timer {verb}.")
    console.print(render_status(result["state"]))


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--url", envvar="TOKEN_TIMER_URL", default=None, help="Server base URL.")
@click.pass_context
def cli(ctx: click.Context, url: Optional[str]):
    """Token Timer: spend tokens on timed leisure sessions."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url or load_config().api_url


@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """Show the wallet and the current timer."""
    console.print(render_status(api_request(ctx.obj["url"], "GET", "/api/state")))


@cli.command()
@click.argument("tokens", type=click.IntRange(min=1))
@click.pass_context
def add(ctx: click.Context, tokens: int):
    """Add TOKENS to the wallet."""
    result = api_request(ctx.obj["url"], "POST", "/api/wallet/add", {"tokens": tokens})
    console.print(f"Added {format_tokens(tokens)}. Balance: [bold]{result['balance']}[/bold]")


@cli.command()
@click.argument("tokens", type=click.IntRange(min=1))
@click.pass_context
def fill(ctx: click.Context, tokens: int):
    """Add up to TOKENS without passing the wallet cap."""
    result = api_request(ctx.obj["url"], "POST", "/api/wallet/fill", {"tokens": tokens})
    console.print(f"Added {format_tokens(result['added'])}. Balance: [bold]{result['balance']}[/bold]")


@cli.command()
@click.argument("tokens", type=click.IntRange(min=1))
@click.pass_context
def start(ctx: click.Context, tokens: int):
    """Redeem TOKENS and start a session (15 minutes each)."""
    _print_transition(api_request(ctx.obj["url"], "POST", "/api/timer/start", {"tokens": tokens}), "started")


@cli.command()
@click.pass_context
def pause(ctx: click.Context):
    """Pause the running session."""
    _print_transition(api_request(ctx.obj["url"], "POST", "/api/timer/pause"), "paused")


@cli.command()
@click.pass_context
def resume(ctx: click.Context):
    """Resume a paused session."""
    _print_transition(api_request(ctx.obj["url"], "POST", "/api/timer/resume"), "resumed")


@cli.command()
@click.pass_context
def end(ctx: click.Context):
    """End the session early and refund unused whole tokens."""
    _print_transition(api_request(ctx.obj["url"], "POST", "/api/timer/end-early"), "ended")


@cli.group()
def grants():
    """Manage scheduled grants."""


@grants.command("list")
@click.pass_context
def grants_list(ctx: click.Context):
    console.print(render_grants(api_request(ctx.obj["url"], "GET", "/api/grants")))


@grants.command("add")
@click.argument("title")
@click.argument("tokens", type=click.IntRange(min=1))
@click.option("--at", "scheduled", type=click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M"]),
              default=None, help="First fire time in local time (defaults to now).")
@click.option("--every", "recurrence", type=click.Choice(["daily", "weekly", "monthly"]),
              default="daily", show_default=True)
@click.option("--max", "max_wallet_tokens", type=int, default=None, help="Only fill the wallet up to this many.")
@click.option("--notes", default=None)
@click.pass_context
def grants_add(ctx, title, tokens, scheduled, recurrence, max_wallet_tokens, notes):
    """Schedule TOKENS to be granted as TITLE."""
    payload = {
        "title": title,
        "token_count": tokens,
        "scheduled_date": (scheduled or datetime.now()).astimezone().isoformat(),
        "recurrence": recurrence,
        "notes": notes,
        "max_wallet_tokens": max_wallet_tokens,
    }
    grant = api_request(ctx.obj["url"], "POST", "/api/grants", payload)
    console.print(f"Scheduled '{grant['title']}' ({grant['id'][:8]}), next {format_next(grant.get('next_occurrence'))}")


@grants.command("toggle")
@click.argument("grant_id")
@click.pass_context
def grants_toggle(ctx: click.Context, grant_id: str):
    full_id = _resolve_grant_id(ctx.obj["url"], grant_id)
    grant = api_request(ctx.obj["url"], "POST", f"/api/grants/{full_id}/toggle")
    console.print(f"'{grant['title']}' is now {'active' if grant['is_active'] else 'inactive'}")


@grants.command("remove")
@click.argument("grant_id")
@click.pass_context
def grants_remove(ctx: click.Context, grant_id: str):
    full_id = _resolve_grant_id(ctx.obj["url"], grant_id)
    api_request(ctx.obj["url"], "DELETE", f"/api/grants/{full_id}")
    console.print(f"Removed {full_id[:8]}")


@cli.command()
@click.pass_context
def recommend(ctx: click.Context):
    """Suggest a session size."""
    recommendations = api_request(ctx.obj["url"], "GET", "/api/recommendations")
    if not recommendations:
        console.print("[dim]No recommendations yet. Finish a few sessions first.[/dim]")
        return
    for rec in recommendations:
        console.print(f"[bold]{format_tokens(rec['suggested_tokens'])}[/bold]  {rec['message']}")
        console.print(f"    [dim]{rec['reason']}[/dim]")


@cli.command()
@click.pass_context
def stats(ctx: click.Context):
    """Show usage totals and goal progress."""
    data = api_request(ctx.obj["url"], "GET", "/api/stats")
    table = Table(show_header=False, border_style="blue", expand=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Today", f"{data['today_minutes']}m")
    table.add_row("This week", data["week_display"])
    table.add_row("This month", f"{data['month_minutes']}m")
    table.add_row("Daily goal", format_goal(data["daily_goal_progress"]))
    table.add_row("Weekly goal", format_goal(data["weekly_goal_progress"]))
    table.add_row("Monthly goal", format_goal(data["monthly_goal_progress"]))
    table.add_row("Average session", f"{data['average_session_length']}m")
    favorites = ", ".join(str(t) for t in data["favorite_session_lengths"]) or "-"
    table.add_row("Favorite sizes", favorites)
    peaks = ", ".join(f"{h:02d}:00" for h in data["peak_usage_hours"]) or "-"
    table.add_row("Peak hours", peaks)
    console.print(table)


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=None, help="Defaults to TOKEN_TIMER_PORT or 7780.")
def serve(host: str, port: Optional[int]):
    """Run the Token Timer server."""
    from .main import run

    run(host=host, port=port)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
