"""CLI commands for procwatch."""

import click


@click.group()
@click.version_option(package_name="procwatch")
@click.option("--debug", is_flag=True, help="Also record debug events in the log file")
@click.pass_context
def main(ctx: click.Context, debug: bool) -> None:
    """Per-process CPU and memory monitor for Linux."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


def _debug_enabled() -> bool:
    obj = click.get_current_context().find_root().obj
    return bool(obj and obj.get("debug"))


@main.command()
def helper() -> None:
    """Run the privileged helper (as root)."""
    import asyncio

    from procwatch.helper import run_helper

    try:
        asyncio.run(run_helper(debug=_debug_enabled()))
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


def _source_options(func):
    func = click.option(
        "--direct",
        is_flag=True,
        help="Read /proc in this process instead of asking the helper",
    )(func)
    func = click.option(
        "--fallback-only",
        is_flag=True,
        help="Skip the helper and parse unprivileged top output",
    )(func)
    return func


@main.command()
@click.option(
    "--sort",
    "sort_by",
    type=click.Choice(["cpu", "mem"]),
    default="cpu",
    show_default=True,
    help="Column to sort by",
)
@click.option("--count", "-n", type=click.IntRange(min=1), default=None, help="Rows to show")
@click.option("--once", is_flag=True, help="Print one sample and exit")
@_source_options
def monitor(sort_by: str, count: int | None, once: bool, fallback_only: bool, direct: bool) -> None:
    """Show the busiest processes, refreshed every sampling interval."""
    import asyncio

    from rich.console import Console, Group
    from rich.live import Live
    from rich.text import Text

    from procwatch import logging as console
    from procwatch.formatting import SortKey, build_process_table, top_process_summary
    from procwatch.monitor import build_provider, run_monitor

    cfg = _load_config()
    console.configure(cfg, source="monitor", debug=_debug_enabled())

    sort_key = SortKey(sort_by)
    rows = count or cfg.sampling.top_count
    provider = build_provider(cfg, direct=direct, fallback_only=fallback_only)
    out = Console()
    last_source: list[str] = []

    def view(sample_set):
        if last_source[-1:] != [sample_set.source]:
            last_source[:] = [sample_set.source]
            console.source_switched(sample_set.source)
        if sample_set.error:
            console.sample_failed(sample_set.error)
        table = build_process_table(sample_set, sort_key, rows)
        summary = top_process_summary(sample_set.processes)
        if summary is None:
            return table
        return Group(Text(f"Top: {summary}", style="bold"), table)

    try:
        if once:
            asyncio.run(
                run_monitor(
                    cfg,
                    provider,
                    lambda s: out.print(view(s)),
                    once=True,
                    on_status=console.status_changed,
                )
            )
            return

        with Live(console=out, auto_refresh=False) as live:
            asyncio.run(
                run_monitor(
                    cfg,
                    provider,
                    lambda s: live.update(view(s), refresh=True),
                    on_status=console.status_changed,
                )
            )
    except TimeoutError:
        console.error("No sample arrived in time", console.Icon.FAIL)
        raise SystemExit(1)


@main.command()
@_source_options
def sysinfo(fallback_only: bool, direct: bool) -> None:
    """Print core and memory information once."""
    import asyncio

    from procwatch import logging as console
    from procwatch.formatting import memory_summary, summarize_cores, swap_summary
    from procwatch.monitor import MonitorSession, build_provider

    cfg = _load_config()
    console.configure(cfg, source="monitor", debug=_debug_enabled())
    provider = build_provider(cfg, direct=direct, fallback_only=fallback_only)

    async def fetch():
        async with MonitorSession(cfg, provider) as session:
            timeout = cfg.helper.connect_timeout + cfg.helper.call_timeout + cfg.fallback.timeout
            return await session.system_info.wait_for_update(0, timeout=timeout)

    try:
        snapshot = asyncio.run(fetch())
    except TimeoutError:
        console.error("System information unavailable", console.Icon.FAIL)
        raise SystemExit(1)

    for line in summarize_cores(snapshot):
        click.echo(line)
    click.echo(memory_summary(snapshot))
    click.echo(swap_summary(snapshot))


def _load_config():
    from procwatch.config import Config

    try:
        return Config.load()
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo(f"Socket: {cfg.socket_path}")
    click.echo(f"Log file: {cfg.log_path}")
    click.echo()
    click.echo(cfg.dumps())


@config.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def config_init(force: bool) -> None:
    """Write the default configuration file."""
    from procwatch import logging as console
    from procwatch.config import Config

    cfg = Config()
    if cfg.config_path.exists() and not force:
        console.config_exists(str(cfg.config_path))
        raise SystemExit(1)

    cfg.save()
    console.config_created(str(cfg.config_path))
