#!/usr/bin/env python3
"""
Upload Bridge CLI

Runs the bridge standalone, with a console front-end standing in for the
application's GUI.

Usage:
    upload-bridge serve                      # Serve on the configured address
    upload-bridge serve --bind 0.0.0.0:9000  # Serve on another address
    upload-bridge serve --confirm            # Ask before accepting each upload
    upload-bridge show-config                # Print the effective configuration
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.logging import RichHandler
from rich.markup import escape

from .api import ClientIpSource
from .bridge import UploadBridge
from .channel import NotificationChannel, channel
from .config import load_config
from .errors import BindError, ChannelClosed

logger = logging.getLogger(__name__)

console = Console()


def setup_logging(level: str = 'INFO', verbose: bool = False):
    """Configure logging with rich output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


class ConsoleFrontEnd:
    """
    Front-end half of the bridge on the terminal.

    Prints every announced client and acknowledges it, either straight
    away or after a yes/no prompt. A declined upload is never acknowledged
    and stays pending until its client gives up.
    """

    def __init__(self, back_to_front: NotificationChannel,
                 front_to_back: NotificationChannel, confirm: bool = False):
        # Receiver created with the channel, so it is listening before serving starts
        self.announcements = back_to_front.rx
        self.acknowledger = front_to_back.tx.clone()
        self.confirm = confirm

        self.accepted = 0
        self.declined = 0

    async def _approve(self, client_ip: str) -> bool:
        if not self.confirm:
            return True
        return await asyncio.to_thread(
            click.confirm, f"Accept upload from {client_ip}?", default=True
        )

    async def run(self):
        """Handle announcements until the channel closes."""
        async for message in self.announcements:
            client_ip = message.payload
            console.print(Panel.fit(
                f"[bold]Incoming upload[/bold]\n\n"
                f"Client: [cyan]{client_ip}[/cyan]",
                title=f"Request #{message.sequence}"
            ))

            if not await self._approve(client_ip):
                self.declined += 1
                console.print(f"[yellow]Upload from {client_ip} left pending[/yellow]")
                continue

            try:
                self.acknowledger.send(client_ip)
            except ChannelClosed:
                break
            self.accepted += 1
            console.print(f"[green]✓ Accepted upload from {client_ip}[/green]")


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.pass_context
def cli(ctx, verbose, config_path):
    """Upload Bridge - local upload endpoint gated by a front-end handshake."""
    config = load_config(Path(config_path) if config_path else None)
    setup_logging(config.log_level, verbose)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--bind', help='Address to listen on (host:port)')
@click.option('--downloads-dir', type=click.Path(file_okay=False),
              help='Directory uploaded files are saved to')
@click.option('--max-upload', type=int, help='Largest accepted body in bytes (0 = no limit)')
@click.option('--client-ip-source', type=click.Choice([s.value for s in ClientIpSource]),
              help='Where the trusted client IP is read from')
@click.option('--confirm', is_flag=True, help='Ask before accepting each upload')
@click.pass_context
def serve(ctx, bind: Optional[str], downloads_dir, max_upload, client_ip_source, confirm):
    """Start the upload bridge."""
    config = ctx.obj['config']

    if downloads_dir:
        config.downloads_dir = Path(downloads_dir).expanduser()
    if max_upload is not None:
        config.max_upload_bytes = max_upload
    if client_ip_source:
        config.client_ip_source = client_ip_source

    try:
        config.validate()
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        ctx.exit(1)

    if not config.downloads_dir.is_dir():
        console.print(f"[yellow]Downloads directory does not exist: {config.downloads_dir}[/yellow]")

    back_to_front = channel(config.channel_capacity)
    front_to_back = channel(config.channel_capacity)
    # Nothing reads the receiver created with the acknowledgment channel
    front_to_back.rx.close()

    front_end = ConsoleFrontEnd(back_to_front, front_to_back, confirm=confirm)
    bridge = UploadBridge(back_to_front, front_to_back, config)
    address = bind or config.bind_address

    console.print(Panel.fit(
        f"[bold green]Upload Bridge[/bold green]\n\n"
        f"Address: [yellow]http://{address}/[/yellow]\n"
        f"Saving to: [blue]{config.downloads_dir}[/blue]\n"
        f"Client IP source: [cyan]{config.client_ip_source}[/cyan]\n"
        f"Mode: [cyan]{'confirm' if confirm else 'auto-accept'}[/cyan]",
        title="Bridge Info"
    ))

    async def run():
        front_end_task = asyncio.create_task(front_end.run())
        try:
            await bridge.serve(address)
        finally:
            back_to_front.tx.close()
            await front_end_task

    try:
        asyncio.run(run())
    except BindError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        ctx.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")

    console.print(f"[green]Bridge stopped[/green] "
                  f"({front_end.accepted} accepted, {front_end.declined} declined)")


@cli.command('show-config')
@click.pass_context
def show_config(ctx):
    """Show the effective configuration."""
    click.echo(json.dumps(ctx.obj['config'].to_dict(), indent=2))


if __name__ == '__main__':
    cli()
