"""
CLI interface for usage_blocks.

Reports session blocks and follows the active block live.
"""

import json
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import typer
import yaml
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from usage_blocks.config.loader import (
    DEFAULT_REFRESH_INTERVAL_SECONDS,
    MonitorConfig,
    clamp_refresh_interval,
    load_monitor_config,
)
from usage_blocks.core.blocks import (
    InvalidConfiguration,
    SessionBlock,
    filter_recent_blocks,
    max_completed_block_tokens,
)
from usage_blocks.core.burn_rate import (
    BurnRateLevel,
    TokenLimitStatus,
    calculate_burn_rate,
    classify_burn_rate,
    evaluate_token_limit,
    project_block_usage,
)
from usage_blocks.core.live_monitor import LiveMonitor
from usage_blocks.core.pricing import CostMode
from usage_blocks.storage.repository import SecondaryUsageSource, UsageFileRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

_STATUS_STYLE = {
    TokenLimitStatus.OK: "green",
    TokenLimitStatus.WARNING: "yellow",
    TokenLimitStatus.EXCEEDS: "red",
}
_LEVEL_STYLE = {
    BurnRateLevel.NORMAL: "green",
    BurnRateLevel.MODERATE: "yellow",
    BurnRateLevel.HIGH: "red",
}


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Session block usage reports."""
    if ctx.invoked_subcommand is None:
        console.print("usage-blocks - Use --help to see available commands")


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)


def _load_config(
    config_path: Optional[str],
    session_length: Optional[float],
    mode: Optional[str],
) -> MonitorConfig:
    config = load_monitor_config(config_path)
    cost_mode = None
    if mode is not None:
        try:
            cost_mode = CostMode(mode.lower())
        except ValueError:
            valid_modes = [m.value for m in CostMode]
            raise InvalidConfiguration(f"--mode must be one of: {valid_modes}")
    return config.with_overrides(window_duration_hours=session_length, cost_mode=cost_mode)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _open_monitor(config: MonitorConfig, clock=None) -> LiveMonitor:
    repository = UsageFileRepository(config.data_paths, cost_mode=config.cost_mode)
    secondary = None
    if config.secondary_paths:
        secondary = SecondaryUsageSource(config.secondary_paths, cost_mode=config.cost_mode)
    return LiveMonitor(config, repository, secondary_source=secondary, clock=clock or _utcnow)


def load_session_blocks(config: MonitorConfig, now: datetime) -> List[SessionBlock]:
    """Read every usage file once and segment the events as of ``now``."""
    with _open_monitor(config, clock=lambda: now) as monitor:
        return monitor.scan_blocks()


def parse_token_limit(value: Optional[str], max_from_all: int) -> Optional[int]:
    """Parse a --token-limit value; ``max`` means the largest completed block."""
    if value is None or value == "" or value == "max":
        return max_from_all if max_from_all > 0 else None
    try:
        limit = int(value)
    except ValueError:
        return None
    return limit if limit > 0 else None


def _format_currency(amount: float) -> str:
    return f"${amount:,.2f}"


def _format_minutes(minutes: float) -> str:
    minutes = int(round(minutes))
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if hours > 0 else f"{mins}m"


def _block_status(block: SessionBlock, now: datetime) -> str:
    if block.is_gap:
        hours = round((block.end_time - block.start_time).total_seconds() / 3600)
        return f"[dim]GAP ({hours}h)[/dim]"
    if block.is_active:
        elapsed = (now - block.start_time).total_seconds() / 60
        remaining = (block.end_time - now).total_seconds() / 60
        return f"[green]ACTIVE ({_format_minutes(elapsed)} / {_format_minutes(remaining)})[/green]"
    return _format_minutes(block.duration_minutes)


def _block_to_dict(block: SessionBlock, now: datetime, token_limit: Optional[int]) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": block.id,
        "startTime": block.start_time.isoformat(),
        "endTime": block.end_time.isoformat(),
        "actualEndTime": block.actual_end_time.isoformat() if block.actual_end_time else None,
        "isActive": block.is_active,
        "isGap": block.is_gap,
        "entries": len(block.entries),
        "tokenCounts": {
            "inputTokens": block.token_counts.input_tokens,
            "outputTokens": block.token_counts.output_tokens,
            "cacheCreationInputTokens": block.token_counts.cache_creation_tokens,
            "cacheReadInputTokens": block.token_counts.cache_read_tokens,
        },
        "totalTokens": block.total_tokens,
        "costUSD": block.cost_usd,
        "models": list(block.models),
        "sources": [source.value for source in block.sources],
        "usageLimitResetTime": (
            block.usage_limit_reset_time.isoformat() if block.usage_limit_reset_time else None
        ),
    }

    if block.is_active:
        burn_rate = calculate_burn_rate(block, now)
        projection = project_block_usage(block, now)
        data["burnRate"] = None if burn_rate is None else {
            "tokensPerMinute": burn_rate.tokens_per_minute,
            "tokensPerMinuteForIndicator": burn_rate.tokens_per_minute_for_indicator,
            "costPerHour": burn_rate.cost_per_hour,
        }
        data["projection"] = None if projection is None else {
            "totalTokens": projection.total_tokens,
            "totalCost": projection.total_cost,
            "remainingMinutes": projection.remaining_minutes,
        }
        if token_limit is not None:
            data["tokenLimitStatus"] = {
                "limit": token_limit,
                "status": evaluate_token_limit(block, token_limit, projection).value,
            }
    return data


def _blocks_table(blocks: List[SessionBlock], now: datetime) -> Table:
    table = Table(title="Session Blocks")
    table.add_column("Block Start")
    table.add_column("Status")
    table.add_column("Models")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")

    for block in blocks:
        start = block.start_time.astimezone().strftime("%Y-%m-%d %H:%M")
        if block.is_gap:
            table.add_row(f"[dim]{start}[/dim]", _block_status(block, now), "-", "-", "-")
            continue
        table.add_row(
            start,
            _block_status(block, now),
            "\n".join(block.models) or "-",
            f"{block.total_tokens:,}",
            _format_currency(block.cost_usd),
        )
    return table


def _active_block_details(block: SessionBlock, now: datetime, token_limit: Optional[int]) -> Panel:
    lines = [
        f"Started: {block.start_time.astimezone().strftime('%Y-%m-%d %H:%M')}",
        f"Tokens: {block.total_tokens:,}",
        f"Cost: {_format_currency(block.cost_usd)}",
    ]

    burn_rate = calculate_burn_rate(block, now)
    if burn_rate is not None:
        level = classify_burn_rate(burn_rate)
        lines.append(
            f"Burn rate: {burn_rate.tokens_per_minute:,.0f} tokens/min "
            f"[{_LEVEL_STYLE[level]}]({level.value.upper()})[/] "
            f"{_format_currency(burn_rate.cost_per_hour)}/hr"
        )

    projection = project_block_usage(block, now)
    if projection is not None:
        lines.append(
            f"Projected: {projection.total_tokens:,} tokens, "
            f"{_format_currency(projection.total_cost)} "
            f"({_format_minutes(projection.remaining_minutes)} left)"
        )

    if token_limit is not None:
        status = evaluate_token_limit(block, token_limit, projection)
        percent = block.total_tokens / token_limit * 100
        lines.append(
            f"Token limit: {token_limit:,} ({percent:.1f}% used) "
            f"[{_STATUS_STYLE[status]}]{status.value.upper()}[/]"
        )

    if block.usage_limit_reset_time is not None:
        reset = block.usage_limit_reset_time.astimezone().strftime("%H:%M")
        lines.append(f"[yellow]Usage limit resets at {reset}[/yellow]")

    return Panel("\n".join(lines), title="Active Block")


@app.command()
def blocks(
    active: bool = typer.Option(
        False,
        "--active",
        "-a",
        help="Show only the active block with projections"
    ),
    recent: bool = typer.Option(
        False,
        "--recent",
        "-r",
        help="Show blocks from the last few days (including active)"
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output JSON instead of a table"
    ),
    token_limit: Optional[str] = typer.Option(
        None,
        "--token-limit",
        "-t",
        help="Token limit for quota warnings (e.g. 500000 or 'max')"
    ),
    session_length: Optional[float] = typer.Option(
        None,
        "--session-length",
        "-n",
        help="Session block duration in hours"
    ),
    mode: Optional[str] = typer.Option(
        None,
        "--mode",
        "-m",
        help="Cost mode: auto, calculate or display"
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML configuration file"
    ),
    log_level: str = typer.Option(
        "warning",
        "--log-level",
        help="Logging level"
    ),
):
    """Show usage grouped by session billing blocks."""
    _configure_logging(log_level)
    try:
        config = _load_config(config_path, session_length, mode)
    except (InvalidConfiguration, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    # One reference time for segmentation and every derived figure
    now = _utcnow()
    all_blocks = load_session_blocks(config, now)

    if not all_blocks:
        if json_output:
            print(json.dumps({"blocks": []}))
        else:
            console.print("[yellow]No usage data found.[/]")
        sys.exit(EXIT_CODE_PASS)

    # Max is taken over all blocks before filters apply
    max_tokens = max_completed_block_tokens(all_blocks)
    if token_limit is not None:
        limit = parse_token_limit(token_limit, max_tokens)
    else:
        limit = config.token_limit

    shown = all_blocks
    if recent:
        shown = filter_recent_blocks(shown, config.recent_days, now)
    if active:
        shown = [block for block in shown if block.is_active]
        if not shown:
            if json_output:
                print(json.dumps({"blocks": [], "message": "No active block"}))
            else:
                console.print("No active session block found.")
            sys.exit(EXIT_CODE_PASS)

    if json_output:
        payload = {"blocks": [_block_to_dict(block, now, limit) for block in shown]}
        print(json.dumps(payload, indent=2))
        sys.exit(EXIT_CODE_PASS)

    console.print(_blocks_table(shown, now))
    for block in shown:
        if block.is_active:
            console.print(_active_block_details(block, now, limit))
    sys.exit(EXIT_CODE_PASS)


def _render_live(block: Optional[SessionBlock], now: datetime, token_limit: Optional[int]):
    header = Text(f"Live usage - {now.astimezone().strftime('%H:%M:%S')}", style="bold")
    if block is None:
        return Group(header, Text("No active session block.", style="dim"))
    return Group(header, _active_block_details(block, now, token_limit))


@app.command()
def live(
    refresh_interval: Optional[int] = typer.Option(
        None,
        "--refresh-interval",
        help=f"Seconds between refreshes (default: config or {DEFAULT_REFRESH_INTERVAL_SECONDS})"
    ),
    token_limit: Optional[str] = typer.Option(
        None,
        "--token-limit",
        "-t",
        help="Token limit for quota warnings (defaults to 'max')"
    ),
    session_length: Optional[float] = typer.Option(
        None,
        "--session-length",
        "-n",
        help="Session block duration in hours"
    ),
    mode: Optional[str] = typer.Option(
        None,
        "--mode",
        "-m",
        help="Cost mode: auto, calculate or display"
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML configuration file"
    ),
    log_level: str = typer.Option(
        "warning",
        "--log-level",
        help="Logging level"
    ),
):
    """Follow the active session block with periodic refreshes."""
    _configure_logging(log_level)
    try:
        config = _load_config(config_path, session_length, mode)
    except (InvalidConfiguration, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not config.data_paths:
        console.print("[red]No usage data directory found[/]")
        sys.exit(EXIT_CODE_FAIL)

    requested = refresh_interval if refresh_interval is not None else config.refresh_interval_seconds
    interval = clamp_refresh_interval(requested)
    if interval != requested:
        console.print(f"[yellow]Refresh interval adjusted to {interval} seconds[/]")

    with _open_monitor(config) as monitor:
        max_tokens = max_completed_block_tokens(monitor.scan_blocks())
        if token_limit is None and config.token_limit is not None:
            limit = config.token_limit
        else:
            limit = parse_token_limit(token_limit, max_tokens)

        try:
            with Live(console=console, auto_refresh=False) as live_view:
                while True:
                    block = monitor.poll_active_block()
                    live_view.update(
                        _render_live(block, monitor.last_scan_time, limit),
                        refresh=True,
                    )
                    time.sleep(interval)
        except KeyboardInterrupt:
            console.print("Stopped.")

    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
