"""
Expiry Sweeper - Daemon Script

Runs the sweeper in the foreground:
1. Loads config (config/config.yaml + .env.local + DEALDESK_* overrides)
2. Builds the container against the configured store and journal
3. Sweeps every sweeper.interval_s until SIGINT/SIGTERM

USAGE:
  python -m dealdesk.sweeper.daemon

ENV VARS:
  DEALDESK_CONFIG_DIR - Directory holding config.yaml (default: config)
  DEALDESK_SWEEP_ONCE - Run a single pass and exit (default: false)
"""

from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path

from dealdesk.config import env_flag, env_path, load_env
from dealdesk.di import Container
from dealdesk.logging import get_logger, LogStream


logger = get_logger(LogStream.SWEEPER)


class SweeperDaemon:
    """Foreground loop around ExpirySweeper.check()"""

    def __init__(self, config_dir: Path):
        self.container = Container()
        self.container.initialize(config_dir, configure_logging=True)
        self.sweeper = self.container.get_sweeper()
        self.poll_s = min(5.0, self.sweeper.interval_s)
        self._stop = threading.Event()

    def run_once(self) -> int:
        self.container.start(run_sweeper=False)
        try:
            result = self.sweeper.sweep()
            logger.info("Single sweep finished", extra=result.to_dict())
            return 1 if result.errors else 0
        finally:
            self.container.stop()

    def start(self) -> int:
        """Start processing loop"""
        logger.info(f"Starting sweeper daemon (interval={self.sweeper.interval_s}s)")

        # Handle shutdown signals
        signal.signal(signal.SIGINT, self._handle_shutdown)
        signal.signal(signal.SIGTERM, self._handle_shutdown)

        self.container.start(run_sweeper=False)
        try:
            while not self._stop.is_set():
                try:
                    self.sweeper.check()
                except Exception as e:
                    logger.error(f"Error in daemon loop: {e}", exc_info=True)
                self._stop.wait(self.poll_s)
        finally:
            self.container.stop()

        logger.info("Sweeper daemon stopped")
        return 0

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signals"""
        logger.info(f"Received signal {signum}, shutting down...")
        self._stop.set()


def main() -> int:
    load_env()
    daemon = SweeperDaemon(env_path("DEALDESK_CONFIG_DIR", Path("config")))
    if env_flag("DEALDESK_SWEEP_ONCE"):
        return daemon.run_once()
    return daemon.start()


if __name__ == "__main__":
    sys.exit(main())
