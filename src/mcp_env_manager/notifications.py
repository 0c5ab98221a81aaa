from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def new_server_detected(self, platform: str, server_name: str) -> None: ...

    def package_orphaned(self, package_name: str) -> None: ...

    def install_failed(self, package_name: str, error: str) -> None: ...


class LogNotifier:
    """Default delivery: the log. Desktop notifications plug in through ``Notifier``."""

    def new_server_detected(self, platform: str, server_name: str) -> None:
        logger.info("New MCP server detected in %s: %s", platform, server_name)

    def package_orphaned(self, package_name: str) -> None:
        logger.warning("Package %s is no longer used by any host config", package_name)

    def install_failed(self, package_name: str, error: str) -> None:
        logger.error("Installing %s failed: %s", package_name, error)
