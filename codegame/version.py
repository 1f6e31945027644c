"""CodeGame 协议版本兼容性判断"""

from __future__ import annotations

# 客户端实现的 CodeGame 协议版本
CG_VERSION = "0.7"


def _split_version(version: str) -> list[str]:
    parts = version.strip().split(".")
    if len(parts) == 1:
        parts.append("0")
    return parts


def is_version_compatible(server_version: str, client_version: str = CG_VERSION) -> bool:
    """判断服务端与客户端的协议版本是否兼容

    规则:
    - 主版本号必须相同
    - 主版本为 0 时次版本号必须完全一致 (1.0 之前不保证向后兼容)
    - 否则客户端次版本号不得高于服务端
    - 次版本号无法解析为整数时视为不兼容

    Args:
        server_version: 服务端版本，如 "0.7"
        client_version: 客户端版本，默认 CG_VERSION

    Returns:
        True 表示兼容
    """
    server_parts = _split_version(server_version)
    client_parts = _split_version(client_version)

    if server_parts[0] != client_parts[0]:
        return False

    if client_parts[0] == "0":
        return server_parts[1] == client_parts[1]

    try:
        server_minor = int(server_parts[1])
        client_minor = int(client_parts[1])
    except ValueError:
        return False
    return client_minor <= server_minor
