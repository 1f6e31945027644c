"""平台数据目录解析

Windows:  %LOCALAPPDATA%            (默认 ~/AppData/Local)
macOS:    $XDG_DATA_HOME            (默认 ~/Library/Application Support)
其他:     $XDG_DATA_HOME            (默认 ~/.local/share)
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


def user_home() -> Path:
    return Path.home()


def data_home() -> Path:
    """当前平台的用户数据目录"""
    if sys.platform.startswith("win"):
        return _env_path("LOCALAPPDATA", user_home() / "AppData" / "Local")
    if sys.platform == "darwin":
        return _env_path("XDG_DATA_HOME", user_home() / "Library" / "Application Support")
    return _env_path("XDG_DATA_HOME", user_home() / ".local" / "share")


def games_dir() -> Path:
    """会话文件根目录: <data home>/codegame/games"""
    return data_home() / "codegame" / "games"


def _env_path(key: str, default: Path) -> Path:
    value = os.environ.get(key)
    if value:
        return Path(value)
    return default
