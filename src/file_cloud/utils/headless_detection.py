"""
Detect environments where a browser cannot be opened for the user.

Over SSH, in containers and on CI runners the authorization URL is printed
instead of launched.
"""

import logging
import os
import sys

lib_logger = logging.getLogger("file_cloud")

_CI_VARIABLES = ("CI", "GITHUB_ACTIONS", "GITLAB_CI", "BUILDKITE", "JENKINS_URL")


def is_headless_environment() -> bool:
    """Checks if no graphical browser is likely to be reachable."""
    if os.getenv("FILE_CLOUD_HEADLESS", "").strip().lower() in {"1", "true", "yes", "on"}:
        return True

    if any(os.getenv(name) for name in _CI_VARIABLES):
        lib_logger.debug("Headless environment detected: CI variables present")
        return True

    if os.getenv("SSH_CONNECTION") or os.getenv("SSH_TTY"):
        lib_logger.debug("Headless environment detected: SSH session")
        return True

    if sys.platform.startswith("linux"):
        if not (os.getenv("DISPLAY") or os.getenv("WAYLAND_DISPLAY")):
            lib_logger.debug("Headless environment detected: no display server")
            return True

    return False
