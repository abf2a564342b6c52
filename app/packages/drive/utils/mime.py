"""MIME 工具：按文件名推测类型，或依据字节签名识别常见二进制格式。"""

from __future__ import annotations

import mimetypes
from typing import Optional

from app.packages.drive.core.constants import OCTET_STREAM

# (偏移, 签名, MIME)；按顺序匹配，首个命中即返回
_SIGNATURES: tuple[tuple[int, bytes, str], ...] = (
    (0, b"%PDF", "application/pdf"),
    (0, b"\x89PNG\r\n\x1a\n", "image/png"),
    (0, b"\xff\xd8\xff", "image/jpeg"),
    (0, b"GIF87a", "image/gif"),
    (0, b"GIF89a", "image/gif"),
    (0, b"PK\x03\x04", "application/zip"),
    (0, b"\x1f\x8b", "application/gzip"),
    (0, b"ID3", "audio/mpeg"),
    (4, b"ftyp", "video/mp4"),
)

# WebP 为 RIFF 容器，需同时校验 8..12 字节
_RIFF = b"RIFF"
_WEBP = b"WEBP"

SNIFF_LENGTH = 16

_OPAQUE_TYPES = {"", OCTET_STREAM, "binary/octet-stream"}


def guess_from_name(name: str) -> Optional[str]:
    mime, _ = mimetypes.guess_type(name)
    return mime


def sniff(head: bytes) -> str:
    """根据负载前若干字节识别 MIME，未命中时返回 octet-stream。"""
    for offset, signature, mime in _SIGNATURES:
        if head[offset:offset + len(signature)] == signature:
            return mime
    if head[:4] == _RIFF and head[8:12] == _WEBP:
        return "image/webp"
    return OCTET_STREAM


def is_usable_content_type(content_type: Optional[str]) -> bool:
    """传输层给出的类型是否可直接使用；缺失或不透明类型需要嗅探。"""
    if not content_type:
        return False
    base = content_type.split(";", 1)[0].strip().lower()
    return base not in _OPAQUE_TYPES


def resolve_media_type(content_type: Optional[str], head: bytes) -> str:
    if is_usable_content_type(content_type):
        return content_type  # type: ignore[return-value]
    return sniff(head)
