"""玩家会话持久化，支持重新加入游戏

会话文件按 "服务器地址为目录、用户名为文件" 的方式存放:

    <games_dir>/<URL 编码的服务器地址>/<username>.json

文件内容只包含 game_id / player_id / player_secret，
服务器地址与用户名由路径推导，不写入文件。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, unquote

from pydantic import BaseModel, ConfigDict, ValidationError

from . import dirs
from .exceptions import InvalidSessionError, SessionNotFoundError

logger = logging.getLogger(__name__)

_SESSION_SUFFIX = ".json"


@dataclass(frozen=True)
class Session:
    """一名玩家在某台服务器某局游戏中的身份

    player_id 与 player_secret 为空表示观战会话。
    """

    game_url: str
    username: str = ""
    game_id: str = ""
    player_id: str = ""
    player_secret: str = ""

    @property
    def is_bound(self) -> bool:
        """是否绑定了玩家身份 (game_id / player_id / player_secret 均非空)"""
        return bool(self.game_id and self.player_id and self.player_secret)

    @property
    def is_spectator(self) -> bool:
        return bool(self.game_id) and not self.player_id and not self.player_secret

    def missing_fields(self) -> list[str]:
        """保存前必须非空但实际为空的字段名"""
        required = ("game_url", "username", "game_id", "player_id", "player_secret")
        return [name for name in required if not getattr(self, name)]

    def __repr__(self) -> str:
        secret = "***" if self.player_secret else ""
        return (
            f"Session(game_url={self.game_url!r}, username={self.username!r}, "
            f"game_id={self.game_id!r}, player_id={self.player_id!r}, "
            f"player_secret={secret!r})"
        )


class SessionRecord(BaseModel):
    """会话文件的磁盘格式"""

    model_config = ConfigDict(extra="ignore")

    game_id: str = ""
    player_id: str = ""
    player_secret: str = ""


class SessionStore:
    """会话文件的读写与清理

    Args:
        games_dir: 会话根目录，默认 <data home>/codegame/games
    """

    def __init__(self, games_dir: str | Path | None = None) -> None:
        self.games_dir = Path(games_dir) if games_dir else dirs.games_dir()

    # ==================== 路径 ====================

    def server_dir(self, game_url: str) -> Path:
        return self.games_dir / quote(game_url, safe="")

    def path_for(self, game_url: str, username: str) -> Path:
        if not username or "/" in username or "\\" in username or username in (".", ".."):
            raise InvalidSessionError(
                "Invalid session username.", game_url=game_url, username=username
            )
        return self.server_dir(game_url) / f"{username}{_SESSION_SUFFIX}"

    # ==================== 读写 ====================

    def load(self, game_url: str, username: str) -> Session:
        """从磁盘加载会话

        Raises:
            SessionNotFoundError: 会话文件不存在
            InvalidSessionError: 文件损坏或缺少字段
        """
        path = self.path_for(game_url, username)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise SessionNotFoundError(game_url=game_url, username=username) from None
        except OSError as e:
            raise InvalidSessionError(
                f"Failed to read session file: {e}", game_url=game_url, username=username
            ) from e

        try:
            record = SessionRecord.model_validate_json(raw)
        except ValidationError as e:
            raise InvalidSessionError(
                "Malformed session file.", game_url=game_url, username=username
            ) from e

        session = Session(
            game_url=game_url,
            username=username,
            game_id=record.game_id,
            player_id=record.player_id,
            player_secret=record.player_secret,
        )
        if not session.is_bound:
            raise InvalidSessionError(
                "Incomplete session file.",
                game_url=game_url,
                username=username,
                missing=session.missing_fields(),
            )
        logger.debug("Session loaded: server=%s user=%s", game_url, username)
        return session

    def save(self, session: Session) -> Path:
        """写入会话文件 (覆盖同一服务器同一用户名的旧文件)

        Returns:
            写入的文件路径

        Raises:
            InvalidSessionError: 任一必需字段为空
        """
        missing = session.missing_fields()
        if missing:
            raise InvalidSessionError(
                game_url=session.game_url or None,
                username=session.username or None,
                missing=missing,
            )

        path = self.path_for(session.game_url, session.username)
        path.parent.mkdir(parents=True, exist_ok=True)
        record = SessionRecord(
            game_id=session.game_id,
            player_id=session.player_id,
            player_secret=session.player_secret,
        )
        with open(path, "w", encoding="utf-8") as f:
            json.dump(record.model_dump(), f, ensure_ascii=False, indent=2)

        logger.info("Session saved: server=%s user=%s", session.game_url, session.username)
        return path

    def remove(self, session: Session) -> None:
        """删除会话文件（尽力而为，不抛异常）"""
        self.delete(session.game_url, session.username)

    def delete(self, game_url: str, username: str) -> None:
        """删除指定服务器与用户名的会话文件，目录为空时一并删除"""
        if not game_url:
            return
        try:
            directory = self.server_dir(game_url)
            if not directory.is_dir():
                return
            self.path_for(game_url, username).unlink(missing_ok=True)
            if not any(directory.iterdir()):
                directory.rmdir()
            logger.info("Session removed: server=%s user=%s", game_url, username)
        except (OSError, InvalidSessionError) as e:
            logger.debug("Failed to remove session file: %s", e)

    # ==================== 查询 ====================

    def exists(self, game_url: str, username: str) -> bool:
        try:
            return self.path_for(game_url, username).is_file()
        except InvalidSessionError:
            return False

    def list_usernames(self, game_url: str) -> list[str]:
        """列出某台服务器下保存过会话的用户名"""
        directory = self.server_dir(game_url)
        if not directory.is_dir():
            return []
        return sorted(p.stem for p in directory.glob(f"*{_SESSION_SUFFIX}"))

    def list_servers(self) -> list[str]:
        """列出所有保存过会话的服务器地址"""
        if not self.games_dir.is_dir():
            return []
        return sorted(unquote(p.name) for p in self.games_dir.iterdir() if p.is_dir())
