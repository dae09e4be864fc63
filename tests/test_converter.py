import sys
from functools import partial
from pathlib import Path

import anyio
import pytest

from kpub.converter import ConversionError, convert_to_kepub, kepub_output_path

COPY_SCRIPT = """\
import shutil
import sys

shutil.copyfile(sys.argv[1], sys.argv[2])
"""

FAIL_SCRIPT = """\
import sys

with open(sys.argv[2], "w") as handle:
    handle.write("partial")
sys.stderr.write("Conversion error: unsupported DRM\\n")
sys.exit(3)
"""

SILENT_SCRIPT = """\
import sys
"""

HANG_SCRIPT = """\
import sys
import time

with open(sys.argv[2], "w") as handle:
    handle.write("partial")
time.sleep(30)
"""


def _command(tmp_path: Path, source: str) -> list[str]:
    script = tmp_path / "fake_convert.py"
    script.write_text(source, encoding="utf-8")
    return [sys.executable, str(script)]


def _input(tmp_path: Path) -> tuple[Path, Path]:
    book = tmp_path / "novel.epub"
    book.write_bytes(b"epub-bytes")
    converted = tmp_path / "converted"
    converted.mkdir()
    return book, converted


def test_kepub_output_path_replaces_extension(tmp_path: Path) -> None:
    assert kepub_output_path(Path("in/novel.epub"), tmp_path) == (
        tmp_path / "novel.kepub.epub"
    )
    assert kepub_output_path(Path("in/story.MOBI"), tmp_path) == (
        tmp_path / "story.kepub.epub"
    )


@pytest.mark.anyio
async def test_convert_returns_output_path(tmp_path: Path) -> None:
    book, converted = _input(tmp_path)

    output = await convert_to_kepub(
        book, converted, command=_command(tmp_path, COPY_SCRIPT)
    )

    assert output == converted / "novel.kepub.epub"
    assert output.read_bytes() == b"epub-bytes"


@pytest.mark.anyio
async def test_nonzero_exit_raises_with_stderr(tmp_path: Path) -> None:
    book, converted = _input(tmp_path)

    with pytest.raises(ConversionError) as exc:
        await convert_to_kepub(book, converted, command=_command(tmp_path, FAIL_SCRIPT))

    assert "exit code 3" in str(exc.value)
    assert "unsupported DRM" in str(exc.value)
    assert list(converted.iterdir()) == []


@pytest.mark.anyio
async def test_missing_output_raises(tmp_path: Path) -> None:
    book, converted = _input(tmp_path)

    with pytest.raises(ConversionError, match="did not produce"):
        await convert_to_kepub(
            book, converted, command=_command(tmp_path, SILENT_SCRIPT)
        )


@pytest.mark.anyio
async def test_missing_binary_raises(tmp_path: Path) -> None:
    book, converted = _input(tmp_path)

    with pytest.raises(ConversionError, match="failed to start"):
        await convert_to_kepub(
            book, converted, command=[str(tmp_path / "no-such-ebook-convert")]
        )


@pytest.mark.anyio
async def test_cancelled_run_removes_partial_output(tmp_path: Path) -> None:
    book, converted = _input(tmp_path)
    command = _command(tmp_path, HANG_SCRIPT)

    output = kepub_output_path(book, converted)

    async with anyio.create_task_group() as tg:
        tg.start_soon(partial(convert_to_kepub, book, converted, command=command))
        with anyio.fail_after(5):
            while not output.exists():
                await anyio.sleep(0.01)
        tg.cancel_scope.cancel()

    assert list(converted.iterdir()) == []
