from PIL import Image

from converter.conversion import probe


def test_detect_image_format_with_pillow(tmp_path):
    path = tmp_path / "no-extension"
    Image.new("RGB", (4, 4), "red").save(path, format="PNG")
    assert probe.detect_format(path) == "png"


def test_unknown_content_without_ffprobe(tmp_path, monkeypatch):
    monkeypatch.setattr(probe.config, "FFPROBE_BINARY", str(tmp_path / "missing-ffprobe"))
    path = tmp_path / "blob.bin"
    path.write_bytes(b"\x00\x01garbage")
    assert probe.detect_format(path) is None
    assert probe.media_duration(path) is None


def test_ffprobe_container_mapping(tmp_path, monkeypatch):
    def fake_ffprobe(path, timeout=30):
        return {"format": {"format_name": "matroska,webm", "duration": "12.5"}}

    monkeypatch.setattr(probe, "ffprobe", fake_ffprobe)
    path = tmp_path / "video"
    path.write_bytes(b"\x1aE\xdf\xa3")
    assert probe.detect_format(path) == "mkv"
    assert probe.media_duration(path) == 12.5


def test_iso_family_uses_extension_hint(tmp_path, monkeypatch):
    monkeypatch.setattr(probe, "ffprobe", lambda path, timeout=30: {"format": {"format_name": "mov,mp4,m4a,3gp,3g2,mj2"}})
    path = tmp_path / "clip.m4a"
    path.write_bytes(b"....ftyp")
    assert probe.detect_format(path) == "m4a"


def test_extension_of():
    assert probe.extension_of("Movie.MOV") == "mov"
    assert probe.extension_of("README") is None
