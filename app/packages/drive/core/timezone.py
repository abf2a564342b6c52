"""时区工具方法：镜像库时间戳按配置时区对外展示。"""

from __future__ import annotations

from datetime import datetime, timezone as dt_timezone
from typing import Optional

from app.packages.drive.core.config import get_settings


def to_local(value: Optional[datetime]) -> Optional[datetime]:
    """将 ``datetime`` 转换为配置时区；SQLite 读出的无时区值按 UTC 处理。"""
    if value is None:
        return None
    tz = get_settings().timezone_info
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt_timezone.utc)
    return value.astimezone(tz)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    localized = to_local(value)
    return localized.isoformat() if localized is not None else None
