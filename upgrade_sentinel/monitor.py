"""Upgrade monitor: watches chain height and swaps the node binary at the target block."""

import os
import time
import signal
import logging
import threading
from enum import Enum
from datetime import datetime, timezone
from typing import Callable, Optional

from . import metrics
from .chain import ChainHeightSample, ChainStatusSource, ProposalStatus
from .config import MonitorConfig, read_binary_version
from .console import ConsoleReporter
from .errors import (ConfigError, GovernanceFailure, MonitorInterrupted,
                     ServiceControlError, TransientNetworkError)
from .fastmode import FastModeStrategy, build_fast_mode
from .health import HealthChecker
from .notifications import (EventKind, FailureInfo, Notice, NotificationEvent,
                            NotificationManager, ProgressInfo, StartInfo, SuccessInfo)
from .service import ServiceController
from .timing import BlockTimeEstimator, MilestoneSet, eta_seconds, format_eta

logger = logging.getLogger(__name__)


class MonitorState(Enum):
    INITIALIZING = "initializing"
    POLLING = "polling"
    FAST_WATCH = "fast_watch"
    UPGRADING = "upgrading"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (MonitorState.SUCCEEDED, MonitorState.FAILED)


class UpgradeMonitor:
    """Drives a single upgrade run from validation to the final report."""

    def __init__(self, config: MonitorConfig,
                 chain: ChainStatusSource,
                 notifier: NotificationManager,
                 service: ServiceController,
                 fast_mode: Optional[FastModeStrategy] = None,
                 health: Optional[HealthChecker] = None,
                 reporter: Optional[ConsoleReporter] = None,
                 version_reader: Callable[..., Optional[str]] = read_binary_version,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.chain = chain
        self.notifier = notifier
        self.service = service
        self.fast_mode = fast_mode or build_fast_mode(config, chain)
        self.health = health or HealthChecker(service, chain, config.service_name,
                                              config.install_dir, config.min_disk_free_gb)
        self.reporter = reporter or ConsoleReporter()
        self.version_reader = version_reader
        self.clock = clock
        self.sleep = sleep

        self.state = MonitorState.INITIALIZING
        self.estimator = BlockTimeEstimator(config.default_block_time)
        self.milestones = MilestoneSet(config.milestones)
        self.current_version: Optional[str] = None
        self.new_version: Optional[str] = None
        self.installed_version: Optional[str] = None
        self.latest_height: Optional[int] = None
        self.triggered_at: Optional[int] = None
        self.proposal_label: Optional[str] = None
        self.failure_reason = "Monitor exited unexpectedly. Check logs for details."
        self.manual_intervention = False
        self.fast_mode_entered = False
        self.upgrade_started = False
        self.shutdown_requested = False

        self.started_at = clock()
        self._last_sample: Optional[ChainHeightSample] = None
        self._last_progress = self.started_at
        self._last_report: Optional[float] = None
        self._last_health = self.started_at
        self._poll_failures = 0
        self._exit_code: Optional[int] = None
        self._finishing = False

        metrics.target_height.set(config.target_height)
        metrics.monitor_state.state(self.state.value)

    # ------------------------------------------------------------------
    # helpers

    def _set_state(self, state: MonitorState):
        logger.info(f"State {self.state.name} -> {state.name}")
        self.state = state
        metrics.monitor_state.state(state.value)

    def _notify(self, kind: EventKind, payload):
        self.notifier.send(NotificationEvent(kind, payload))

    def _runtime(self) -> str:
        return format_eta(int(self.clock() - self.started_at))

    def _eta(self, remaining: int) -> str:
        return format_eta(eta_seconds(remaining, self.estimator.seconds_per_block))

    @staticmethod
    def _due(last: Optional[float], interval: float, now: float) -> bool:
        return last is None or now - last >= interval

    def _observe(self, height: int):
        """Record a height sample and refresh the block time estimate."""
        self.latest_height = height
        sample = ChainHeightSample(height, datetime.fromtimestamp(self.clock(), tz=timezone.utc))
        if self._last_sample is None or self._last_sample.height != height:
            if self._last_sample is not None:
                self.estimator.update(self._last_sample, sample)
            self._last_sample = sample

        metrics.block_height.set(height)
        metrics.blocks_remaining.set(max(0, self.config.target_height - height))
        metrics.seconds_per_block.set(self.estimator.seconds_per_block)

    # ------------------------------------------------------------------
    # INITIALIZING

    def initialize(self):
        """Validate binaries and endpoints, then start polling. Raises ConfigError."""
        config = self.config
        self.reporter.banner("🚀 COSMOS UPGRADE SENTINEL", [
            ("Daemon", config.daemon_name),
            ("Target Block", config.target_height),
            ("RPC URL", config.rpc_url),
            ("Fast Mode", f"{self.fast_mode.name} (≤ {config.fast_threshold} blocks)"),
            ("Event Stream", config.event_stream_url or "Disabled"),
            ("Progress Reporting",
             f"Every {config.progress_interval}s" if config.progress_interval > 0 else "Disabled"),
            ("Restart After Swap", "Yes" if config.restart else "No (manual start)"),
        ])
        config.validate()

        new_binary = config.new_binary_path
        if not new_binary.is_file():
            raise ConfigError(f"New binary not found at {new_binary}")
        if not os.access(new_binary, os.X_OK):
            try:
                new_binary.chmod(new_binary.stat().st_mode | 0o111)
            except OSError as e:
                raise ConfigError(f"New binary at {new_binary} is not executable: {e}") from e

        if not config.install_path.is_file():
            raise ConfigError(f"Current binary not found at {config.install_path}")

        self.current_version = self.version_reader(config.install_path)
        if not self.current_version:
            raise ConfigError(f"Cannot read version of {config.install_path}")
        self.reporter.ok(f"Current Version: {self.current_version}")

        self.new_version = self.version_reader(new_binary)
        if not self.new_version:
            raise ConfigError(f"Cannot read version of {new_binary}")
        self.reporter.ok(f"New Version:     {self.new_version}")

        if self.current_version == self.new_version:
            raise ConfigError(f"Current and new versions are identical ({self.current_version}). "
                              f"Nothing to upgrade.")

        try:
            status = self.chain.get_status()
        except TransientNetworkError as e:
            raise ConfigError(f"Cannot get latest block from RPC {config.rpc_url}: {e}") from e
        self.reporter.ok(f"Current Block:   {status.height:,}")

        if self.fast_mode.uses_event_stream:
            self.reporter.step("🔍 Testing event stream connectivity...")
            if not self.fast_mode.probe():
                raise ConfigError(f"Cannot connect to event stream at {config.event_stream_url}. "
                                  f"Ensure the RPC WebSocket is enabled or use polling fast mode.")
            self.reporter.ok("Event stream reachable")

        self._calibrate_block_time(status.height)
        self._observe(status.height)
        self._run_health_check()

        self._set_state(MonitorState.POLLING)
        self._notify(EventKind.START, StartInfo(
            daemon=config.daemon_name,
            target_height=config.target_height,
            current_height=status.height,
            current_version=self.current_version,
            new_version=self.new_version,
            network=status.network_info,
            rpc_url=config.rpc_url,
            ws_url=config.event_stream_url,
            proposal_id=config.proposal_id
        ))
        self.reporter.ok("All validations passed. Monitoring block progression...")

    def _calibrate_block_time(self, height: int):
        start = max(1, height - self.config.block_time_window)
        if start >= height:
            return
        try:
            old = ChainHeightSample(start, self.chain.get_block_time(start))
            new = ChainHeightSample(height, self.chain.get_block_time(height))
        except TransientNetworkError as e:
            logger.warning(f"Could not sample block history: {e}")
            self.reporter.warn(f"Could not sample history, using default "
                               f"{self.estimator.seconds_per_block:g}s block time")
            return
        estimate = self.estimator.update(old, new)
        self.reporter.ok(f"Estimated block time: {estimate:.2f}s")

    # ------------------------------------------------------------------
    # POLLING

    def _tick(self):
        try:
            height = self.chain.get_latest_height()
        except TransientNetworkError as e:
            self._poll_failures += 1
            metrics.height_poll_failures.inc()
            logger.warning(f"Failed to get latest block: {e}")
            self.reporter.warn("Failed to get latest block, retrying...")
            if self._poll_failures == 1:
                self._notify(EventKind.WARNING, Notice(
                    "Failed to retrieve block height from RPC endpoint. Retrying...", str(e)))
            self.sleep(self.config.poll_interval)
            return

        self._poll_failures = 0
        self._observe(height)
        target = self.config.target_height

        if height >= target:
            self._begin_upgrade(height)
            return

        remaining = target - height
        now = self.clock()

        if self.config.proposal_id is not None and self._due(self._last_report, self.config.report_interval, now):
            self._last_report = now
            self._check_proposal()

        if self.config.health_interval > 0 and self._due(self._last_health, self.config.health_interval, now):
            self._last_health = now
            self._run_health_check()

        self._check_milestones(height)
        self._send_progress(height, now)

        if remaining <= self.config.fast_threshold:
            if not self.fast_mode_entered:
                self._enter_fast_mode(remaining)
                if self.state is MonitorState.FAST_WATCH:
                    return
            interval = self.fast_mode.poll_interval
            mode = "⚡ FAST MODE"
        else:
            interval = self.config.poll_interval
            mode = "📊 POLL MODE"

        self.reporter.progress(mode, height, target, self._eta(remaining), self.proposal_label, interval)
        self.sleep(interval)

    def _check_proposal(self):
        proposal_id = self.config.proposal_id
        try:
            status = self.chain.get_proposal_status(proposal_id)
        except TransientNetworkError as e:
            logger.warning(f"Failed to query proposal #{proposal_id}: {e}")
            status = ProposalStatus.UNKNOWN

        self.proposal_label = f"#{proposal_id} {status.value}"
        if status.is_fatal:
            raise GovernanceFailure(f"Proposal #{proposal_id} has failed with status: "
                                    f"PROPOSAL_STATUS_{status.value}.")

    def _run_health_check(self):
        status = self.health.check()
        if not status.healthy:
            logger.warning(f"Health check failed: {status.message}")
            self.reporter.warn(status.message)
            self._notify(EventKind.WARNING, Notice(f"⚠️ {status.message}"))

    def _check_milestones(self, height: int):
        milestone = self.milestones.evaluate(height / self.config.target_height * 100)
        if milestone is None:
            return
        remaining = self.config.target_height - height
        self._notify(EventKind.MILESTONE, Notice(
            f"🎯 **{milestone}%** progress reached!",
            f"Blocks remaining: **{remaining}** | ETA: **{self._eta(remaining)}**"
        ))

    def _send_progress(self, height: int, now: float):
        if self.config.progress_interval <= 0:
            return
        if now - self._last_progress < self.config.progress_interval:
            return
        target = self.config.target_height
        remaining = target - height
        self._notify(EventKind.PROGRESS, ProgressInfo(
            current_height=height,
            target_height=target,
            remaining=remaining,
            progress_percent=height / target * 100,
            seconds_per_block=self.estimator.seconds_per_block,
            eta=self._eta(remaining),
            runtime=self._runtime()
        ))
        self._last_progress = now

    def _enter_fast_mode(self, remaining: int):
        self.fast_mode_entered = True
        self.reporter.step(f"⚡ Entering {self.fast_mode.name} fast mode ({remaining} blocks remaining)")
        self._notify(EventKind.FAST_MODE_ENTERED, Notice(
            f"Less than **{self.config.fast_threshold}** blocks remaining (**{remaining}** blocks). "
            f"{self.fast_mode.describe()}",
            f"Estimated completion: {self._eta(remaining)}"
        ))
        if self.fast_mode.uses_event_stream:
            self._set_state(MonitorState.FAST_WATCH)

    # ------------------------------------------------------------------
    # FAST_WATCH

    def _on_stream_height(self, height: int):
        self._observe(height)
        target = self.config.target_height
        if height < target:
            self._check_milestones(height)
            self._send_progress(height, self.clock())
        remaining = max(0, target - height)
        self.reporter.progress("⚡ WS MODE", height, target, self._eta(remaining))

    def _fast_watch(self):
        reached = self.fast_mode.watch(self.config.target_height, self._on_stream_height)
        if reached is not None:
            self._begin_upgrade(reached)
            return

        self.reporter.warn("Event stream ended unexpectedly. Falling back to polling...")
        self._notify(EventKind.WARNING, Notice(
            "Event stream ended before the target block. Falling back to polling."))
        self._set_state(MonitorState.POLLING)

    # ------------------------------------------------------------------
    # UPGRADING

    def _begin_upgrade(self, height: int):
        if self.state not in (MonitorState.POLLING, MonitorState.FAST_WATCH):
            return
        self.triggered_at = height
        self.reporter.step(f"🚀 TARGET BLOCK REACHED ({height}) - starting upgrade...")
        self._set_state(MonitorState.UPGRADING)

    def _perform_upgrade(self):
        if self.upgrade_started:
            return
        self.upgrade_started = True

        config = self.config
        service_name = config.service_name
        self._notify(EventKind.UPGRADING, Notice(
            f"Target block height **{config.target_height}** reached at block **{self.triggered_at}**. "
            f"Executing upgrade sequence."
        ))
        self.reporter.banner("🚀 INITIATING UPGRADE SEQUENCE", [
            ("Service", service_name),
            ("Install Path", config.install_path),
            ("New Binary", config.new_binary_path),
        ])

        self.reporter.step(f"🛑 Phase 1: Stopping service {service_name}...")
        if not self.service.stop(service_name):
            raise ServiceControlError(f"Failed to stop service {service_name}. "
                                      f"The old binary is untouched; safe to retry.")

        self.reporter.step("📦 Phase 2: Deploying new binary...")
        if not self.service.replace_binary(config.install_path, config.new_binary_path):
            reason = (f"Failed to copy the new binary to {config.install_path}. "
                      f"Check permissions and disk space.")
            restarted = False
            if config.restart_on_copy_failure:
                self.reporter.step("🔄 Restarting original service...")
                restarted = self.service.start(service_name)
                reason += (" Original service restarted." if restarted
                           else " Original service could not be restarted.")
            else:
                reason += " Service left stopped for manual recovery."
            raise ServiceControlError(reason, safe_to_retry=restarted)

        if config.restart:
            self.reporter.step("▶️  Phase 3: Starting service...")
            if not self.service.start(service_name):
                raise ServiceControlError(
                    "CRITICAL: Service failed to start with the new binary. "
                    "The node is DOWN and requires manual intervention.",
                    safe_to_retry=False
                )
        else:
            self.reporter.step("⏸️  Phase 3: Skipping automatic restart (manual mode)")

        self._verify_version()
        self._set_state(MonitorState.SUCCEEDED)

    def _verify_version(self):
        version = self.version_reader(self.config.install_path)
        if not version:
            message = f"Could not read the version of {self.config.install_path} after the swap."
        elif version == self.current_version:
            message = f"Installed binary still reports the pre-upgrade version ({version})."
        else:
            self.installed_version = version
            self.reporter.ok(f"Post-upgrade version: {version}")
            return

        logger.warning(message)
        self.reporter.warn(message)
        self._notify(EventKind.WARNING, Notice(message))

    # ------------------------------------------------------------------
    # driver

    def _fail(self, reason: str, manual_intervention: bool = False):
        logger.error(reason)
        self.failure_reason = reason
        self.manual_intervention = manual_intervention
        if not self.state.terminal:
            self._set_state(MonitorState.FAILED)

    def step(self):
        """Run one unit of work for the current state."""
        try:
            if self.state is MonitorState.POLLING:
                self._tick()
            elif self.state is MonitorState.FAST_WATCH:
                self._fast_watch()
            elif self.state is MonitorState.UPGRADING:
                self._perform_upgrade()
        except GovernanceFailure as e:
            self._fail(str(e))
        except ServiceControlError as e:
            self._fail(str(e), manual_intervention=e.manual_intervention)

    def finish(self) -> int:
        """Emit the final report, clear run state and return the exit code."""
        if self._exit_code is not None:
            return self._exit_code
        self._finishing = True

        if self.shutdown_requested:
            logger.warning("Interrupt received during upgrade; exiting after the swap sequence")
            self.reporter.warn("Interrupt received during upgrade; exiting after the swap sequence")

        config = self.config
        succeeded = self.state is MonitorState.SUCCEEDED
        if succeeded:
            self._notify(EventKind.SUCCESS, SuccessInfo(
                daemon=config.daemon_name,
                from_version=self.current_version or "unknown",
                to_version=self.installed_version or self.new_version or "unknown",
                target_height=config.target_height,
                triggered_at=self.triggered_at,
                runtime=self._runtime(),
                restarted=config.restart
            ))
        else:
            self._notify(EventKind.FAILURE, FailureInfo(
                reason=self.failure_reason,
                target_height=config.target_height,
                runtime=self._runtime(),
                current_height=self.latest_height,
                manual_intervention=self.manual_intervention
            ))

        self.reporter.summary(succeeded, self.failure_reason, restarted=config.restart)
        self.milestones.reset()
        self._exit_code = 0 if succeeded else 1
        return self._exit_code

    def _handle_signal(self, signum, frame):
        name = signal.Signals(signum).name
        if self.state is MonitorState.UPGRADING:
            logger.warning(f"Received {name} during upgrade; finishing the swap sequence first")
            self.shutdown_requested = True
            return
        if self.state.terminal or self._finishing:
            return
        raise MonitorInterrupted(f"Monitor interrupted by {name} before the upgrade was executed.")

    def run(self, install_signal_handlers: bool = True) -> int:
        """Monitor until the upgrade succeeds or fails; returns the process exit code."""
        previous = {}
        if install_signal_handlers and threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                previous[signum] = signal.signal(signum, self._handle_signal)

        try:
            try:
                self.initialize()
            except ConfigError as e:
                logger.error(f"Initialization failed: {e}")
                self.reporter.error(str(e))
                self.failure_reason = str(e)
                return self.finish()

            while not self.state.terminal:
                self.step()

        except MonitorInterrupted as e:
            self._fail(str(e))
        except Exception as e:
            logger.exception("Unexpected monitor error")
            self._fail(f"Unexpected error: {e}")
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

        return self.finish()
