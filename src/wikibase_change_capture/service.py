"""Process runtime wiring settings, the capture loop and signal handling."""

from __future__ import annotations

import logging
import signal
import sys
from typing import Optional

from .capture import ChangeCaptureLoop, build_capture_loop
from .config import Settings, load_settings

logger = logging.getLogger(__name__)


class ServiceRuntime:
    """Runs one capture loop until it is stopped or aborts."""

    def __init__(
        self, settings: Settings, *, loop: Optional[ChangeCaptureLoop] = None
    ) -> None:
        self.settings = settings
        self.loop = loop or build_capture_loop(settings)

    def install_signal_handlers(self) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum, _frame) -> None:
        logger.info("received signal %s - stopping after the current phase", signum)
        self.loop.stop()

    def run(self) -> int:
        logger.info(
            "capturing changes from %s (stream %s)",
            self.settings.base_url(),
            self.settings.stream_name,
        )
        try:
            self.loop.run_forever()
        except Exception:  # noqa: BLE001 - surfaced to the operator via exit code
            logger.exception("capture loop aborted; operator attention required")
            return 1
        finally:
            self.loop.close()
        return 0


def main() -> None:
    """Entrypoint used by both python -m and the console script hook."""
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    settings = load_settings()
    runtime = ServiceRuntime(settings)
    runtime.install_signal_handlers()
    sys.exit(runtime.run())
