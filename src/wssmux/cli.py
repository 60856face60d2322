"""wssmux CLI - install, operate and remove the tunnel."""

from __future__ import annotations

import asyncio
import functools
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import SystemPaths, TunnelConfig
from .edge import CertificateInfo, EdgeSettings
from .exceptions import ConfigNotFoundError, WssmuxError
from .logging import get_logger, setup_logging
from .manager import TunnelManager
from .monitor import LogSource, LogViewer, TunnelMonitor
from .schedule import RestartInterval
from .supervisor import PortForwardSupervisor
from .utils import parse_port, parse_port_list, validate_domain

console = Console()
logger = get_logger(__name__)

BANNER = """
██╗    ██╗███████╗███████╗███╗   ███╗██╗   ██╗██╗  ██╗
██║    ██║██╔════╝██╔════╝████╗ ████║██║   ██║╚██╗██╔╝
██║ █╗ ██║███████╗███████╗██╔████╔██║██║   ██║ ╚███╔╝
██║███╗██║╚════██║╚════██║██║╚██╔╝██║██║   ██║ ██╔██╗
╚███╔███╔╝███████║███████║██║ ╚═╝ ██║╚██████╔╝██╔╝ ██╗
 ╚══╝╚══╝ ╚══════╝╚══════╝╚═╝     ╚═╝ ╚═════╝ ╚═╝  ╚═╝
               WSSMUX Tunnel Manager
"""

MENU_ITEMS = [
    ("1", "Install Tunnel"),
    ("2", "Setup Restart Schedule"),
    ("3", "Add New Port"),
    ("4", "View Logs"),
    ("5", "Monitor Tunnel"),
    ("6", "Complete Removal"),
    ("7", "Exit"),
]

SCHEDULE_CHOICES = [str(interval.hours) for interval in RestartInterval]


@dataclass
class AppContext:
    paths: SystemPaths
    verbose: bool = False

    def manager(self, settings: EdgeSettings | None = None) -> TunnelManager:
        return TunnelManager(self.paths, settings=settings)

    def init_logging(self, to_install_log: bool = True) -> None:
        setup_logging(
            level="DEBUG" if self.verbose else "INFO",
            log_file=self.paths.install_log if to_install_log else None,
        )


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Print wssmux errors in red and exit with status 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except WssmuxError as e:
            console.print(f"[red]Error: {e}[/red]")
            sys.exit(1)

    return wrapper


def _port_list(
    ctx: click.Context, param: click.Parameter, value: str | list[int] | None
) -> list[int] | None:
    if value is None or isinstance(value, list):
        return value
    try:
        return parse_port_list(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _port(ctx: click.Context, param: click.Parameter, value: str | int | None) -> int | None:
    if value is None or isinstance(value, int):
        return value
    try:
        return parse_port(value, "Port")
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _optional_domain(value: str) -> str | None:
    return validate_domain(value) if value.strip() else None


def _remove_domain(ctx: click.Context, param: click.Parameter, value: str | None) -> str | None:
    if value is None:
        return None
    try:
        return _optional_domain(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


@click.group(invoke_without_command=True)
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="WSSMUX_CONFIG_DIR",
    default=None,
    help="Configuration directory (default: /etc/wssmux)",
)
@click.option(
    "--log-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="WSSMUX_LOG_DIR",
    default=None,
    help="Log directory (default: /var/log/wssmux)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def main(ctx: click.Context, config_dir: Path | None, log_dir: Path | None, verbose: bool) -> None:
    """WSSMUX - TLS-fronted TCP port forwarding tunnel."""
    overrides: dict[str, Path] = {}
    if config_dir is not None:
        overrides["config_dir"] = config_dir.resolve()
    if log_dir is not None:
        overrides["log_dir"] = log_dir.resolve()
    ctx.obj = AppContext(paths=SystemPaths(**overrides), verbose=verbose)

    if ctx.invoked_subcommand is None:
        ctx.invoke(menu)


@main.command()
@click.option("--role", type=click.Choice(["iran", "foreign"], case_sensitive=False), prompt="Enter server role (iran/foreign)")
@click.option("--ports", callback=_port_list, prompt="Enter v2ray inbound ports (comma-separated)", help="Ports to forward, e.g. 8443,8080")
@click.option("--panel-port", callback=_port, prompt="Enter XUI panel port to exclude", help="Port never forwarded")
@click.option("--domain", default="", show_default=False, prompt="Enter your domain", help="Tunnel domain (required for the iran role)")
@click.option("--upstream", "upstream_address", default="", prompt="Enter foreign server IP", help="Upstream (foreign) server address")
@click.option("--email", default=None, help="ACME account email (default: admin@<domain>)")
@click.option("--remove-domain", default=None, callback=_remove_domain, help="Remove a previous domain's edge state first")
@click.pass_obj
@handle_errors
def install(
    app: AppContext,
    role: str,
    ports: list[int],
    panel_port: int,
    domain: str,
    upstream_address: str,
    email: str | None,
    remove_domain: str | None,
) -> None:
    """Install the tunnel (edge bootstrap + forwarding service)."""
    try:
        config = TunnelConfig(
            role=role,
            domain=domain or None,
            upstream_address=upstream_address or None,
            ports=ports,
            excluded_port=panel_port,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)

    app.init_logging()
    manager = app.manager(EdgeSettings(acme_email=email))
    stored = manager.install(config, remove_domain=remove_domain)

    console.print("[green]Installation completed successfully![/green]")
    if stored.is_edge:
        console.print(f"[green]Access your tunnel at:[/green] https://{stored.domain}{manager.lifecycle.settings.control_path}")
    elif stored.domain:
        console.print(f"[green]Foreign server configured for domain:[/green] {stored.domain}")
    console.print(f"[yellow]XUI panel port ({stored.excluded_port}) is excluded from tunneling[/yellow]")


@main.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
@handle_errors
def uninstall(app: AppContext, yes: bool) -> None:
    """Remove every tunnel component."""
    if not yes and not click.confirm("Are you sure? This will remove everything", default=False):
        console.print("Operation cancelled")
        return
    app.init_logging(to_install_log=False)
    app.manager().uninstall()
    console.print("[green]All components removed successfully[/green]")


@main.command()
@click.option("--listen-host", default="0.0.0.0", show_default=True, help="Address forwarders bind to")
@click.option("--idle-timeout", type=float, default=None, help="Close relays idle for this many seconds")
@click.pass_obj
@handle_errors
def run(app: AppContext, listen_host: str, idle_timeout: float | None) -> None:
    """Run the port forwarding supervisor (service entry point)."""
    app.init_logging(to_install_log=False)
    supervisor = PortForwardSupervisor(
        app.manager().store, listen_host=listen_host, idle_timeout=idle_timeout
    )
    sys.exit(asyncio.run(supervisor.run()))


@main.command("add-port")
@click.argument("port", callback=_port)
@click.pass_obj
@handle_errors
def add_port(app: AppContext, port: int) -> None:
    """Add a port to the tunnel and restart the service."""
    app.init_logging()
    if app.manager().add_port(port):
        console.print(f"[green]Port {port} added successfully[/green]")
    else:
        console.print("[yellow]Port already exists in tunnel[/yellow]")


@main.command()
@click.argument("interval", type=click.Choice([*SCHEDULE_CHOICES, "off"]))
@click.pass_obj
@handle_errors
def schedule(app: AppContext, interval: str) -> None:
    """Restart the service every INTERVAL hours, or 'off' to disable."""
    app.init_logging()
    manager = app.manager()
    if interval == "off":
        manager.schedule.remove()
        console.print("[yellow]Restart schedule disabled[/yellow]")
        return
    restart_interval = RestartInterval.from_hours(int(interval))
    manager.schedule.install(restart_interval)
    console.print(f"[green]Cron job configured:[/green] {restart_interval.value}")


@main.command()
@click.argument("source", type=click.Choice([s.value for s in LogSource]), default=LogSource.INSTALL.value)
@click.option("--follow", "-f", is_flag=True, help="Stream new lines")
@click.option("--lines", "-n", type=int, default=50, show_default=True)
@click.pass_obj
def logs(app: AppContext, source: str, follow: bool, lines: int) -> None:
    """Show a log: install, service, service-error, proxy-access, proxy-error."""
    viewer = LogViewer(app.paths)
    log_source = LogSource(source)
    if follow:
        if viewer.follow(log_source) != 0:
            console.print("Log not found")
        return
    content = viewer.tail(log_source, lines)
    if content is None:
        console.print("Log not found")
        return
    for line in content:
        console.print(line, markup=False, highlight=False, soft_wrap=True)


@main.command()
@click.argument("term")
@click.pass_obj
def search(app: AppContext, term: str) -> None:
    """Search for TERM across the tunnel and nginx logs."""
    console.print(f"[yellow]Searching for '{term}' in logs...[/yellow]")
    for match in LogViewer(app.paths).search(term):
        console.print(f"{match.path}:{match.line_number}: {match.line}", markup=False, highlight=False, soft_wrap=True)


@main.command()
@click.pass_obj
@handle_errors
def status(app: AppContext) -> None:
    """Print configuration, service status, listening sockets and recent logs."""
    manager = app.manager()
    monitor = TunnelMonitor(manager.store, manager.service)
    try:
        snapshot = monitor.snapshot()
    except ConfigNotFoundError:
        console.print("[red]Configuration not found. Please install tunnel first[/red]")
        return

    config = snapshot.config
    table = Table(show_header=False)
    table.add_column("Field", style="green")
    table.add_column("Value", style="bold")
    table.add_row("Domain", config.domain or "-")
    table.add_row("Role", config.role.value)
    table.add_row("Foreign IP", config.upstream_address or "-")
    table.add_row("V2Ray Ports", ",".join(str(p) for p in config.ports))
    table.add_row("XUI Port", str(config.excluded_port))
    if config.is_edge and config.domain:
        table.add_row("Certificate", _certificate_label(manager.lifecycle.certs.inspect(config.domain)))
    console.print(table)

    console.print("\n[yellow]Service Status:[/yellow]")
    console.print(snapshot.service_status, markup=False, highlight=False, soft_wrap=True)

    console.print("\n[yellow]Active Connections:[/yellow]")
    for address in snapshot.listening:
        console.print(address)

    console.print("\n[yellow]Recent Logs:[/yellow]")
    for line in snapshot.recent_logs:
        console.print(line, markup=False, highlight=False, soft_wrap=True)


def _certificate_label(info: CertificateInfo) -> str:
    if not info.present:
        return "missing"
    label = f"expires in {info.days_left} days" if info.days_left is not None else "expiry unknown"
    return label + (" (renewal due)" if info.renewal_due else "")


@main.command()
@click.pass_context
def menu(ctx: click.Context) -> None:
    """Interactive menu."""
    while True:
        console.print(BANNER, style="magenta")
        lines = [f"[yellow][{key}][/yellow] {label}" for key, label in MENU_ITEMS]
        console.print(Panel("\n".join(lines), title="WSSMUX", border_style="cyan"))

        choice = click.prompt("Enter your choice [1-7]", default="7", show_default=False)
        if choice == "7":
            return

        try:
            _dispatch_menu(ctx, choice)
        except SystemExit:
            # A failed action already printed its error; stay in the menu
            pass
        click.prompt("Press Enter to continue", default="", show_default=False)


def _dispatch_menu(ctx: click.Context, choice: str) -> None:
    if choice == "1":
        remove_domain = None
        if click.confirm("Do you want to remove any existing tunnel configuration?", default=False):
            remove_domain = _prompt_with(_optional_domain, "Enter domain to remove (leave empty to skip)", default="")
        ctx.invoke(
            install,
            role=click.prompt("Enter server role (iran/foreign)", type=click.Choice(["iran", "foreign"], case_sensitive=False)),
            ports=_prompt_with(parse_port_list, "Enter v2ray inbound ports (comma-separated)"),
            panel_port=_prompt_with(parse_port, "Enter XUI panel port to exclude"),
            domain=click.prompt("Enter your domain"),
            upstream_address=click.prompt("Enter foreign server IP"),
            email=None,
            remove_domain=remove_domain,
        )
    elif choice == "2":
        labels = "/".join([*SCHEDULE_CHOICES, "off"])
        interval = click.prompt(f"Restart every N hours ({labels})", type=click.Choice([*SCHEDULE_CHOICES, "off"]))
        ctx.invoke(schedule, interval=interval)
    elif choice == "3":
        ctx.invoke(add_port, port=_prompt_with(parse_port, "Enter new port to add"))
    elif choice == "4":
        _log_menu(ctx)
    elif choice == "5":
        ctx.invoke(status)
    elif choice == "6":
        ctx.invoke(uninstall, yes=False)
    else:
        console.print("[red]Invalid option[/red]")


def _log_menu(ctx: click.Context) -> None:
    options = {
        "1": LogSource.INSTALL,
        "2": LogSource.SERVICE,
        "3": LogSource.SERVICE_ERROR,
        "4": LogSource.PROXY_ACCESS,
        "5": LogSource.PROXY_ERROR,
    }
    console.print("[yellow]1. Installation log  2. Service log (live)  3. Service error log (live)[/yellow]")
    console.print("[yellow]4. Nginx access log (live)  5. Nginx error log (live)  6. Search in logs  7. Exit[/yellow]")
    choice = click.prompt("Select log type", type=click.Choice(["1", "2", "3", "4", "5", "6", "7"]))
    if choice == "7":
        return
    if choice == "6":
        ctx.invoke(search, term=click.prompt("Enter search term"))
        return
    source = options[choice]
    ctx.invoke(logs, source=source.value, follow=source != LogSource.INSTALL, lines=1000)


def _prompt_with(parser: Callable[[str], Any], text: str, default: str | None = None) -> Any:
    while True:
        value = click.prompt(text, default=default, show_default=False)
        try:
            return parser(value)
        except ValueError as e:
            console.print(f"[red]{e}[/red]")


if __name__ == "__main__":
    main()
