"""Terminal output: in-place progress line, phase banners and final summary."""

from typing import Iterable, Optional, Tuple

import click

RULE = "=" * 64


class ConsoleReporter:
    """Writes operator-facing output to stdout."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._line_open = False

    def _echo(self, message: str = "", nl: bool = True):
        if self.enabled:
            click.echo(message, nl=nl)

    def _close_line(self):
        if self._line_open:
            self._echo()
            self._line_open = False

    def banner(self, title: str, rows: Iterable[Tuple[str, str]] = ()):
        self._close_line()
        self._echo(click.style(title, fg='green', bold=True))
        self._echo(RULE)
        for label, value in rows:
            self._echo(f"   {label + ':':<21}{click.style(str(value), fg='cyan')}")
        self._echo(RULE)

    def step(self, message: str):
        self._close_line()
        self._echo(f"   {click.style(message, fg='yellow')}")

    def ok(self, message: str):
        self._close_line()
        self._echo(f"   ✔️  {message}")

    def warn(self, message: str):
        self._close_line()
        self._echo(f"⚠️  {click.style(message, fg='yellow')}")

    def error(self, message: str):
        self._close_line()
        self._echo(f"🔥 {click.style(message, fg='red')}")

    def progress(self, mode: str, height: int, target: int, eta: str,
                 proposal: Optional[str] = None, next_in: Optional[float] = None):
        """Overwrite the current line with the latest observation."""
        parts = [
            click.style(mode, fg='red' if 'FAST' in mode or 'WS' in mode else 'blue'),
            f"Block: {click.style(f'{height:,}', fg='green')}/{target:,}",
            f"Rem: {click.style(str(max(0, target - height)), fg='yellow')}",
            f"ETA: {click.style(eta, fg='cyan')}",
        ]
        if proposal:
            parts.append(f"Prop: {proposal}")
        if next_in is not None:
            parts.append(f"Next: {next_in:g}s")
        self._echo("\r" + " | ".join(parts) + "   ", nl=False)
        self._line_open = True

    def summary(self, succeeded: bool, reason: str = "", restarted: bool = True):
        self._close_line()
        self._echo()
        self._echo(RULE)
        self._echo("                    OPERATION COMPLETED")
        self._echo(RULE)
        if succeeded:
            self._echo(f"🎉 {click.style('SUCCESS:', fg='green')} Upgrade completed.")
            if not restarted:
                self._echo(f"   {click.style('Service remains STOPPED for manual start', fg='yellow')}")
        else:
            self._echo(f"🔴 {click.style('FAILURE:', fg='red')} {reason}")
        self._echo(RULE)
