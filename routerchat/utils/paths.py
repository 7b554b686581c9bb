"""
Path utilities for routerchat.
"""

import os
from pathlib import Path

HOME_ENV_VAR = "ROUTERCHAT_HOME"


def get_routerchat_dir() -> Path:
    """Get the routerchat home directory (~/.routerchat unless overridden)."""
    override = os.environ.get(HOME_ENV_VAR)
    path = Path(override) if override else Path.home() / ".routerchat"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_credentials_dir() -> Path:
    """Get the credentials directory."""
    path = get_routerchat_dir() / "credentials"
    path.mkdir(parents=True, exist_ok=True)
    return path
