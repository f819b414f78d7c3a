"""CLI entry point for Upgrade Sentinel."""

import sys
import json
import logging
from pathlib import Path
from typing import Optional

import click

from . import __version__, metrics
from .chain import ChainHeightSample, ChainStatusSource
from .config import FAST_MODES, Settings, normalize_rpc_url
from .errors import ConfigError, TransientNetworkError
from .health import HealthChecker
from .monitor import UpgradeMonitor
from .notifications import NotificationManager
from .service import ServiceController
from .timing import BlockTimeEstimator, eta_seconds, format_eta

USAGE_EXAMPLE = "Example: upgrade-sentinel watch -b lumerad -t 425000 -n /root/lumerad-v2 -d <discord_webhook>"


def setup_logging(log_level: str, log_file: Optional[Path] = None):
    """Setup logging configuration."""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    # stdout carries the progress line
    handlers = [logging.StreamHandler(sys.stderr)]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format=log_format,
        handlers=handlers
    )


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=False), help='Config file path')
@click.option('--log-level', '-l', default=None, help='Log level')
@click.option('--log-file', type=click.Path(), default=None, help='Also write logs to this file')
@click.pass_context
def cli(ctx, config, log_level, log_file):
    """Upgrade Sentinel - swaps Cosmos node binaries at a governance upgrade height."""
    config_path = Path(config) if config else None
    settings = Settings(config_path=config_path)
    setup_logging(log_level or settings.log_level, Path(log_file) if log_file else settings.log_file)
    ctx.obj = settings


@cli.command()
@click.option('--binary-name', '-b', help='Daemon name, e.g. lumerad')
@click.option('--target-block', '-t', type=int, help='Upgrade block height')
@click.option('--new-binary-path', '-n', type=click.Path(), help='Path to the new binary')
@click.option('--install-path', '-p', type=click.Path(), default=None,
              help='Directory holding the installed binary (default: ~/go/bin)')
@click.option('--rpc-url', '-r', default=None, help='Node RPC URL (default: http://localhost:26657)')
@click.option('--api-url', '-a', default=None, help='Node REST API URL (default: http://localhost:1317)')
@click.option('--ws-url', '-w', default=None, help='Event stream URL (default: derived from the RPC URL)')
@click.option('--proposal-id', '-i', type=int, default=None, help='Governance proposal to watch')
@click.option('--discord-webhook', '-d', default=None, help='Discord webhook URL')
@click.option('--notify-url', default=None, help='Generic webhook receiving the same JSON payload')
@click.option('--progress-interval', type=int, default=None, help='Progress report interval in seconds (0 disables)')
@click.option('--fast-threshold', type=int, default=None, help='Remaining blocks that trigger fast mode')
@click.option('--poll-interval', type=float, default=None, help='Polling interval in seconds')
@click.option('--fast-poll-interval', type=float, default=None, help='Polling interval in fast mode')
@click.option('--fast-mode', type=click.Choice(FAST_MODES), default=None, help='How to watch near the target')
@click.option('--no-restart', is_flag=True, help='Swap the binary but leave the service stopped')
@click.option('--no-restart-on-copy-failure', is_flag=True,
              help='Leave the service stopped if the binary copy fails')
@click.option('--no-sudo', is_flag=True, help='Run systemctl without sudo')
@click.option('--metrics-port', type=int, default=None, help='Expose Prometheus metrics on this port')
@click.pass_context
def watch(ctx, binary_name, target_block, new_binary_path, install_path, rpc_url, api_url, ws_url,
          proposal_id, discord_webhook, notify_url, progress_interval, fast_threshold, poll_interval,
          fast_poll_interval, fast_mode, no_restart, no_restart_on_copy_failure, no_sudo, metrics_port):
    """Monitor the chain and upgrade the node binary at the target block."""
    settings: Settings = ctx.obj

    if not binary_name or target_block is None or not new_binary_path:
        click.echo("🔥 ERROR: Missing required arguments.", err=True)
        click.echo(ctx.get_usage(), err=True)
        click.echo(USAGE_EXAMPLE, err=True)
        ctx.exit(1)

    try:
        config = settings.monitor_config(
            binary_name, target_block, Path(new_binary_path).expanduser(),
            install_dir=install_path,
            rpc_url=rpc_url,
            api_url=api_url,
            ws_url=ws_url,
            proposal_id=proposal_id,
            discord_webhook=discord_webhook,
            notify_url=notify_url,
            progress_interval=progress_interval,
            fast_threshold=fast_threshold,
            poll_interval=poll_interval,
            fast_poll_interval=fast_poll_interval,
            fast_mode=fast_mode,
            restart=False if no_restart else None,
            restart_on_copy_failure=False if no_restart_on_copy_failure else None,
            use_sudo=False if no_sudo else None,
        )
    except ConfigError as e:
        click.echo(f"❌ {e}", err=True)
        ctx.exit(1)

    if metrics_port:
        metrics.serve(metrics_port)

    chain = ChainStatusSource(config.rpc_url, config.api_url, config.event_stream_url,
                              timeout=config.request_timeout,
                              stream_idle_timeout=config.stream_idle_timeout)
    notifier = NotificationManager(
        discord_webhook=config.discord_webhook,
        notify_url=config.notify_url,
        telegram_bot_token=config.telegram_bot_token,
        telegram_chat_id=config.telegram_chat_id,
        timeout=config.request_timeout
    )
    service = ServiceController(use_sudo=config.use_sudo)

    monitor = UpgradeMonitor(config, chain, notifier, service)
    sys.exit(monitor.run())


@cli.command()
@click.option('--rpc-url', '-r', default=None, help='Node RPC URL')
@click.option('--api-url', '-a', default=None, help='Node REST API URL')
@click.option('--proposal-id', '-i', type=int, default=None, help='Governance proposal to query')
@click.option('--target-block', '-t', type=int, default=None, help='Show the ETA to this height')
@click.option('--binary-name', '-b', default=None, help='Also check the health of <binary-name>.service')
@click.option('--format', type=click.Choice(['json', 'text']), default='text')
@click.pass_obj
def status(settings: Settings, rpc_url, api_url, proposal_id, target_block, binary_name, format: str):
    """Show chain height, sync state and proposal status."""
    chain = ChainStatusSource(normalize_rpc_url(rpc_url or settings.endpoints.rpc_url),
                              api_url or settings.endpoints.api_url)

    try:
        node = chain.get_status()
    except TransientNetworkError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    report = {
        'chain': {
            'network': node.network,
            'node_version': node.node_version,
            'height': node.height,
            'catching_up': node.catching_up,
        },
        'settings': settings.to_dict(),
    }
    warnings = []

    if proposal_id is not None:
        try:
            report['proposal'] = {'id': proposal_id, 'status': chain.get_proposal_status(proposal_id).value}
        except TransientNetworkError as e:
            report['proposal'] = {'id': proposal_id, 'status': "UNKNOWN", 'error': str(e)}

    if target_block is not None:
        estimator = BlockTimeEstimator(float(settings.timing.default_block_time))
        start = max(1, node.height - 100)
        if start < node.height:
            try:
                estimator.update(ChainHeightSample(start, chain.get_block_time(start)),
                                 ChainHeightSample(node.height, chain.get_block_time(node.height)))
            except TransientNetworkError as e:
                warnings.append(f"Could not sample block history: {e}")
        remaining = max(0, target_block - node.height)
        report['target'] = {
            'height': target_block,
            'remaining': remaining,
            'seconds_per_block': round(estimator.seconds_per_block, 3),
            'eta': format_eta(eta_seconds(remaining, estimator.seconds_per_block)),
        }

    if binary_name:
        checker = HealthChecker(ServiceController(use_sudo=settings.use_sudo), chain,
                                f"{binary_name}.service", settings.install_path)
        report['health'] = checker.check().to_dict()

    if format == 'json':
        if warnings:
            report['warnings'] = warnings
        click.echo(json.dumps(report, indent=2))
        return

    click.echo("Upgrade Sentinel Status")
    click.echo("=" * 80)
    click.echo(f"Network:      {node.network}")
    click.echo(f"Node Version: {node.node_version}")
    click.echo(f"Block Height: {node.height:,}")
    click.echo(f"Catching Up:  {node.catching_up}")

    if 'proposal' in report:
        proposal = report['proposal']
        suffix = f" ({proposal['error']})" if 'error' in proposal else ""
        click.echo(f"Proposal #{proposal_id}: {proposal['status']}{suffix}")

    for warning in warnings:
        click.echo(f"⚠️  {warning}")

    if 'target' in report:
        target = report['target']
        click.echo(f"Target Block: {target_block:,} ({target['remaining']:,} blocks remaining)")
        click.echo(f"Block Time:   {target['seconds_per_block']:.2f}s")
        click.echo(f"ETA:          {target['eta']}")

    if 'health' in report:
        health = report['health']
        icon = "✅" if health['healthy'] else "❌"
        click.echo(f"Service:      {icon} {health['service_name']}")
        if health['message']:
            click.echo(f"              {health['message']}")


@cli.command('test-notifications')
@click.pass_obj
def test_notifications(settings: Settings):
    """Send a test message to every configured notification channel."""
    notifier = NotificationManager(
        discord_webhook=settings.notifications.discord_webhook,
        notify_url=settings.notifications.notify_url,
        telegram_bot_token=settings.notifications.telegram_bot_token,
        telegram_chat_id=settings.notifications.telegram_chat_id
    )
    if not notifier.enabled:
        click.echo("❌ No notification channel configured", err=True)
        sys.exit(1)
    notifier.test_notifications()
    click.echo("✅ Test notifications sent")


def main():
    """Console script: click usage errors exit with code 1."""
    try:
        rv = cli.main(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(1)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    sys.exit(rv or 0)


if __name__ == '__main__':
    main()
