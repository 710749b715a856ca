import stat
from pathlib import Path

import pytest

from conftest import make_caps
from converter.conversion.errors import (
    CORRUPT_INPUT,
    PROCESS_ERROR,
    RESOURCE_EXHAUSTED,
    UNSUPPORTED_CODEC,
    ExecutionError,
)
from converter.conversion.models import ConversionOptions, InputMethod
from converter.executors.base import ExecutionContext
from converter.executors.imagemagick import ImageMagickExecutor, build_command, classify_failure


def write_script(path: Path, body: str) -> str:
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return str(path)


@pytest.fixture
def upload_task(build_task, tmp_path):
    src = tmp_path / "photo.png"
    src.write_bytes(b"fake image")
    return build_task(
        input_method=InputMethod.UPLOAD,
        input_location=str(src),
        filename="photo.png",
        input_format="png",
        output_format="webp",
        options=ConversionOptions("medium", "original", None),
        engine="imagemagick",
    )


def make_executor(tmp_path, body):
    binary = write_script(tmp_path / "convert", body)
    return ImageMagickExecutor(binary=binary, output_dir=tmp_path / "out", poll_interval=0.02)


def make_ctx(tmp_path):
    return ExecutionContext("task-1", timeout=30, work_dir=tmp_path / "work")


class TestBuildCommand:
    def test_jpeg_flattens_resizes_and_sets_quality(self):
        cmd = build_command(Path("in.png"), Path("out.jpg"), "png", "jpg", ConversionOptions("high", "1080p", None))
        assert cmd == [
            "convert", "in.png[0]", "-auto-orient", "-resize", "1920x1080>",
            "-background", "white", "-alpha", "remove", "-alpha", "off",
            "-quality", "92", "-interlace", "Plane", "out.jpg",
        ]

    def test_pdf_page_rasterised_at_density(self):
        cmd = build_command(Path("in.pdf"), Path("out.png"), "pdf", "png", ConversionOptions("medium", "original", None))
        assert cmd == ["convert", "-density", "150", "in.pdf[0]", "-auto-orient", "out.png"]

    def test_animated_output_keeps_frames(self):
        cmd = build_command(Path("in.gif"), Path("out.webp"), "gif", "webp", ConversionOptions("low", "original", None))
        assert cmd[1] == "in.gif"
        assert cmd[cmd.index("-quality") + 1] == "70"

    def test_tiff_uses_lzw(self):
        cmd = build_command(Path("in.png"), Path("out.tiff"), "png", "tiff", ConversionOptions())
        assert cmd[cmd.index("-compress") + 1] == "LZW"
        assert "-quality" not in cmd


@pytest.mark.parametrize("returncode,output,expected", [
    (1, "convert: no decode delegate for this image format `XYZ'", UNSUPPORTED_CODEC),
    (1, "convert: attempt to perform an operation not allowed by the security policy `PDF' not authorized", UNSUPPORTED_CODEC),
    (1, "convert: improper image header `in.png'", CORRUPT_INPUT),
    (1, "convert: cache resources exhausted", RESOURCE_EXHAUSTED),
    (-9, "", RESOURCE_EXHAUSTED),
    (1, "convert: unable to open image", PROCESS_ERROR),
])
def test_classify_failure(returncode, output, expected):
    assert classify_failure(returncode, output).classification == expected


def test_execute_success(tmp_path, upload_task):
    executor = make_executor(tmp_path, 'for last; do :; done\nprintf image > "$last"')
    result = executor.execute(upload_task, make_caps(), make_ctx(tmp_path))
    out = Path(result.output_location)
    assert out == tmp_path / "out" / "01234567_photo.webp"
    assert out.read_bytes() == b"image"
    assert result.output_size == len(b"image")
    assert list((tmp_path / "work").iterdir()) == []


def test_execute_failure_removes_partial_output(tmp_path, upload_task):
    body = 'for last; do :; done\nprintf partial > "$last"\necho "convert: improper image header" >&2\nexit 1'
    executor = make_executor(tmp_path, body)
    with pytest.raises(ExecutionError) as exc:
        executor.execute(upload_task, make_caps(), make_ctx(tmp_path))
    assert exc.value.classification == CORRUPT_INPUT
    assert not (tmp_path / "out" / "01234567_photo.webp").exists()


def test_missing_output_is_process_error(tmp_path, upload_task):
    executor = make_executor(tmp_path, "exit 0")
    with pytest.raises(ExecutionError) as exc:
        executor.execute(upload_task, make_caps(), make_ctx(tmp_path))
    assert exc.value.classification == PROCESS_ERROR


def test_version(tmp_path):
    executor = make_executor(tmp_path, 'echo "Version: ImageMagick 7.1.1-29 Q16-HDRI x86_64"')
    assert executor.version() == "7.1.1-29"
