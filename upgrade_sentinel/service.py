"""Systemd service control and binary replacement for the managed node."""

import os
import time
import shutil
import logging
import tempfile
import subprocess
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


class ServiceController:
    """Starts, stops and inspects a systemd unit and swaps its executable."""

    def __init__(self, use_sudo: bool = True, stop_settle: float = 5.0,
                 start_settle: float = 5.0, timeout: float = 60.0):
        self.use_sudo = use_sudo
        self.stop_settle = stop_settle
        self.start_settle = start_settle
        self.timeout = timeout

    def _systemctl(self, *args: str) -> List[str]:
        command = ['systemctl', *args]
        return ['sudo', *command] if self.use_sudo else command

    def is_active(self, service_name: str) -> bool:
        try:
            result = subprocess.run(
                ['systemctl', 'is-active', service_name],
                capture_output=True,
                text=True,
                timeout=5
            )
            return result.stdout.strip() == 'active'
        except Exception as e:
            logger.error(f"Failed to check {service_name} service status: {e}")
            return False

    def stop(self, service_name: str) -> bool:
        """Stop the service and confirm it is no longer active."""
        logger.info(f"Stopping service: {service_name}")

        try:
            result = subprocess.run(
                self._systemctl('stop', service_name),
                capture_output=True,
                text=True,
                timeout=self.timeout
            )

            if result.returncode != 0:
                logger.error(f"Failed to stop service: {result.stderr}")
                return False

            time.sleep(self.stop_settle)

            if self.is_active(service_name):
                logger.error(f"Service {service_name} is still active")
                return False

            logger.info(f"Service {service_name} stopped successfully")
            return True

        except Exception as e:
            logger.error(f"Failed to stop service: {e}")
            return False

    def start(self, service_name: str) -> bool:
        """Start the service and confirm it came up."""
        logger.info(f"Starting service: {service_name}")

        try:
            result = subprocess.run(
                self._systemctl('start', service_name),
                capture_output=True,
                text=True,
                timeout=self.timeout
            )

            if result.returncode != 0:
                logger.error(f"Failed to start service: {result.stderr}")
                return False

            time.sleep(self.start_settle)

            if self.is_active(service_name):
                logger.info(f"Service {service_name} started successfully")
                return True

            logger.error(f"Service {service_name} is not active")
            return False

        except Exception as e:
            logger.error(f"Failed to start service: {e}")
            return False

    def replace_binary(self, install_path: Path, source_path: Path) -> bool:
        """Copy `source_path` next to `install_path`, then rename it into place."""
        install_path = Path(install_path)
        logger.info(f"Replacing binary at {install_path} with {source_path}")

        temp_path = None
        try:
            install_path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(prefix=f".{install_path.name}.", suffix=".tmp",
                                             dir=install_path.parent)
            os.close(fd)
            temp_path = Path(temp_name)

            shutil.copy2(source_path, temp_path)
            temp_path.chmod(0o755)
            os.replace(temp_path, install_path)

            logger.info(f"Binary replaced successfully at {install_path}")
            return True

        except Exception as e:
            logger.error(f"Failed to replace binary: {e}")
            if temp_path is not None and temp_path.exists():
                temp_path.unlink()
            return False
