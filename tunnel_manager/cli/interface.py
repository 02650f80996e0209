"""
Command-line interface for tunnel manager
"""

import argparse
import signal
import sys
import time
from pathlib import Path
from typing import Optional, List
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import (
    Progress, SpinnerColumn, TextColumn
)
from rich import box

from ..core.config_manager import ConfigManager
from ..core.errors import TunnelManagerError
from ..core.supervisor import ConnectionSupervisor
from ..core.types import ConnectionState, Server
from ..utils.logging_setup import setup_file_logging, set_logging_level

console = Console()


class TunnelCLI:
    """Command-line interface for tunnel management"""

    def __init__(self, supervisor: Optional[ConnectionSupervisor] = None,
                 config: Optional[ConfigManager] = None):
        self.supervisor = supervisor or ConnectionSupervisor(config=config)

        # Register callbacks
        self.supervisor.register_callback('state_change', self._on_state_change)
        self.supervisor.register_callback('connected', self._on_connected)
        self.supervisor.register_callback('disconnected', self._on_disconnected)
        self.supervisor.register_callback('connection_error', self._on_error)
        self.supervisor.register_callback('auto_failover', self._on_auto_failover)

    def connect(self, server_id: Optional[str] = None, foreground: bool = True) -> bool:
        """Connect and, in the foreground, stay up until interrupted"""
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            task = progress.add_task("Connecting...", total=None)
            try:
                success = self.supervisor.connect(server_id)
            except TunnelManagerError as e:
                console.print(f"[red]✗ Connection failed: {e}[/red]")
                return False
            finally:
                progress.update(task, completed=1)

        if not success:
            console.print("[yellow]Already connected or connecting[/yellow]")
            return False

        console.print("[green]✓ Connected successfully[/green]")
        self.status()

        if foreground:
            console.print("[dim]Press Ctrl+C to disconnect[/dim]")
            try:
                while (self.supervisor.state != ConnectionState.DISCONNECTED
                       or self.supervisor.failover.in_progress):
                    time.sleep(1)
            except KeyboardInterrupt:
                pass
            self.disconnect()

        return True

    def disconnect(self):
        """Disconnect from the tunnel"""
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            task = progress.add_task("Disconnecting...", total=None)
            self.supervisor.disconnect()
            progress.update(task, completed=1)

    def status(self):
        """Show connection status"""
        status = self.supervisor.get_status()

        table = Table(title="Tunnel Status", box=box.ROUNDED)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white")

        table.add_row("State", status['state'])
        table.add_row("Connected", "✓" if status['connected'] else "✗")
        table.add_row("Auto-failover", "On" if status['auto_failover'] else "Off")

        server = status['server']
        if server:
            table.add_row("Server", f"{server.get('flag') or ''} {server['name']}".strip())
            table.add_row("Endpoint", f"{server['address']}:{server['port']}")

        if status['connected']:
            table.add_row("Uptime", self._format_duration(status['uptime']))
            if status['address']:
                table.add_row("IP Address", status['address'])

        console.print(table)

    def list_servers(self):
        """List configured servers"""
        server_set = self.supervisor.get_servers()

        if not server_set.servers:
            console.print("[yellow]No servers configured. Use 'add <url>' first.[/yellow]")
            return

        table = Table(title="Servers", box=box.ROUNDED)
        table.add_column("", style="green")
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="white")
        table.add_column("Address", style="blue")
        table.add_column("Port", style="magenta")
        table.add_column("Country", style="yellow")

        for server in server_set.servers:
            country = (f"{server.flag or ''} {server.country_name or ''}".strip()
                       or "N/A")
            table.add_row(
                "●" if server.id == server_set.active_server_id else "",
                server.id[:8],
                server.name,
                server.address,
                str(server.port),
                country,
            )

        console.print(table)

    def add_server(self, url: str):
        try:
            server = self.supervisor.add_server(url)
        except TunnelManagerError as e:
            console.print(f"[red]✗ {e}[/red]")
            return
        self._display_server(server, title="Server Added")

    def delete_server(self, server_id: str):
        try:
            self.supervisor.delete_server(self._resolve_id(server_id))
        except TunnelManagerError as e:
            console.print(f"[red]✗ {e}[/red]")
            return
        console.print("[green]✓ Server deleted[/green]")

    def use_server(self, server_id: str):
        """Make a server active, reconnecting if connected"""
        try:
            server = self.supervisor.set_active_server(self._resolve_id(server_id))
        except TunnelManagerError as e:
            console.print(f"[red]✗ {e}[/red]")
            return
        console.print(f"[green]✓ Active server: {server.name}[/green]")

    def set_failover(self, enabled: bool):
        self.supervisor.set_auto_failover(enabled)
        console.print(f"Auto-failover {'enabled' if enabled else 'disabled'}")

    def diagnostics(self):
        """Show platform, binary and address diagnostics"""
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            task = progress.add_task("Collecting diagnostics...", total=None)
            info = self.supervisor.get_diagnostics()
            progress.update(task, completed=1)

        for section, values in info.items():
            table = Table(title=section.capitalize(), box=box.SIMPLE)
            table.add_column("Key", style="cyan")
            table.add_column("Value", style="white")
            for key, value in values.items():
                table.add_row(key, str(value))
            console.print(table)

    def reset_proxy(self):
        """Restore direct routing left behind by a crashed session"""
        result = self.supervisor.configurator.apply(False)
        if result.failures:
            console.print(f"[yellow]Some settings could not be reset: {result.partial_failure}[/yellow]")
        else:
            console.print("[green]✓ System proxy disabled[/green]")

    def _resolve_id(self, prefix: str) -> str:
        """Accept the short id shown by 'servers'"""
        matches = [sid for sid in self.supervisor.get_servers().ids() if sid.startswith(prefix)]
        return matches[0] if len(matches) == 1 else prefix

    def _display_server(self, server: Server, title: str = "Server"):
        info_panel = Panel.fit(
            f"[bold]Name:[/bold] {server.name}\n"
            f"[bold]Address:[/bold] {server.address}\n"
            f"[bold]Port:[/bold] {server.port}\n"
            f"[bold]Protocol:[/bold] {server.protocol.upper()}\n"
            f"[bold]ID:[/bold] {server.id}",
            title=title,
            border_style="blue"
        )
        console.print(info_panel)

    def _on_state_change(self, old_state, new_state, message):
        console.print(f"[dim]State: {old_state.name} → {new_state.name}[/dim]")

    def _on_connected(self, address, servers):
        console.print(f"[dim]Tunnel address: {address}[/dim]")

    def _on_disconnected(self):
        console.print("[dim]Disconnected[/dim]")

    def _on_error(self, error_message):
        console.print(f"[red]Error: {error_message}[/red]")

    def _on_auto_failover(self, success, server):
        if success:
            console.print(f"[yellow]Failed over to {server.name}[/yellow]")
        else:
            console.print("[red]Auto-failover could not find a working server[/red]")

    def _format_duration(self, seconds: float) -> str:
        """Format duration in seconds to human readable"""
        if seconds < 60:
            return f"{seconds:.0f}s"
        elif seconds < 3600:
            minutes = seconds // 60
            seconds %= 60
            return f"{minutes:.0f}m {seconds:.0f}s"
        else:
            hours = seconds // 3600
            minutes = (seconds % 3600) // 60
            return f"{hours:.0f}h {minutes:.0f}m"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tunnel-manager',
        description='Tunnel connection manager with automatic failover',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s add "vless://uuid@host:443?security=reality&sni=example.com#Home"
  %(prog)s connect
  %(prog)s use 3f2a1c9b
  %(prog)s failover off
        """
    )
    parser.add_argument('--log-file', type=Path, help='Path to log file')
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Set logging level'
    )
    parser.add_argument('--config-dir', type=Path, help='Configuration directory')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    connect_parser = subparsers.add_parser('connect', help='Connect and stay in the foreground')
    connect_parser.add_argument('--server', help='Server id to make active first')

    subparsers.add_parser('status', help='Show connection status')
    subparsers.add_parser('servers', help='List servers')

    add_parser = subparsers.add_parser('add', help='Add a server from a vless:// URL')
    add_parser.add_argument('url')

    delete_parser = subparsers.add_parser('delete', help='Delete a server')
    delete_parser.add_argument('server_id')

    use_parser = subparsers.add_parser('use', help='Set the active server')
    use_parser.add_argument('server_id')

    failover_parser = subparsers.add_parser('failover', help='Toggle auto-failover')
    failover_parser.add_argument('mode', choices=['on', 'off'])

    subparsers.add_parser('diagnostics', help='Show diagnostics')
    subparsers.add_parser('reset-proxy', help='Disable the system proxy')

    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for CLI interface"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = ConfigManager(args.config_dir)
    log_level = args.log_level or config.get('log_level', 'INFO')
    logger = setup_file_logging('tunnel_manager', args.log_file or config.get('log_file'), log_level)
    set_logging_level(log_level)

    try:
        cli = TunnelCLI(config=config)

        def signal_handler(signum, frame):
            """Handle termination signals gracefully"""
            console.print(f"\nReceived signal {signum}, shutting down...")
            cli.supervisor.emergency_disconnect()
            sys.exit(0)

        signal.signal(signal.SIGTERM, signal_handler)

        if args.command == 'connect':
            ok = cli.connect(server_id=args.server)
            sys.exit(0 if ok else 1)
        elif args.command == 'status':
            cli.status()
        elif args.command == 'servers':
            cli.list_servers()
        elif args.command == 'add':
            cli.add_server(args.url)
        elif args.command == 'delete':
            cli.delete_server(args.server_id)
        elif args.command == 'use':
            cli.use_server(args.server_id)
        elif args.command == 'failover':
            cli.set_failover(args.mode == 'on')
        elif args.command == 'diagnostics':
            cli.diagnostics()
        elif args.command == 'reset-proxy':
            cli.reset_proxy()

    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(0)
    except TunnelManagerError as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
