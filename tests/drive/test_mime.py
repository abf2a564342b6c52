from app.packages.drive.core.constants import OCTET_STREAM
from app.packages.drive.utils.mime import guess_from_name, resolve_media_type, sniff


def test_sniff_known_signatures():
    assert sniff(b"%PDF-1.7\n%") == "application/pdf"
    assert sniff(b"\x89PNG\r\n\x1a\n\x00\x00") == "image/png"
    assert sniff(b"\xff\xd8\xff\xe0") == "image/jpeg"
    assert sniff(b"GIF89a") == "image/gif"
    assert sniff(b"PK\x03\x04") == "application/zip"
    assert sniff(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"
    assert sniff(b"\x00\x00\x00\x18ftypmp42") == "video/mp4"
    assert sniff(b"plain text") == OCTET_STREAM
    assert sniff(b"") == OCTET_STREAM


def test_resolve_media_type_prefers_transport_type():
    assert resolve_media_type("text/plain; charset=utf-8", b"%PDF") == "text/plain; charset=utf-8"
    assert resolve_media_type("application/octet-stream", b"%PDF") == "application/pdf"
    assert resolve_media_type(None, b"%PDF") == "application/pdf"


def test_guess_from_name():
    assert guess_from_name("report.pdf") == "application/pdf"
    assert guess_from_name("noext") is None
