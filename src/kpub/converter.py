from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import anyio

from .logging import get_logger

logger = get_logger(__name__)

KEPUB_SUFFIX = ".kepub.epub"
DEFAULT_COMMAND = ("ebook-convert",)
STDERR_TAIL_CHARS = 2000


class ConversionError(RuntimeError):
    pass


def kepub_output_path(input_path: Path, converted_dir: Path) -> Path:
    return converted_dir / f"{input_path.stem}{KEPUB_SUFFIX}"


async def convert_to_kepub(
    input_path: Path,
    converted_dir: Path,
    *,
    command: Sequence[str] = DEFAULT_COMMAND,
) -> Path:
    """Run the converter and return the path of the ``.kepub.epub`` it wrote."""
    output_path = kepub_output_path(input_path, converted_dir)
    args = [*command, str(input_path), str(output_path)]
    logger.info(
        "converter.started",
        input=str(input_path),
        output=str(output_path),
    )
    completed = False
    try:
        try:
            result = await anyio.run_process(args, check=False)
        except OSError as exc:
            raise ConversionError(f"failed to start {command[0]}: {exc}") from exc

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace")
            stderr = stderr[-STDERR_TAIL_CHARS:]
            raise ConversionError(
                f"{command[0]} failed with exit code {result.returncode}\n"
                f"Stderr: {stderr.strip()}"
            )
        if not output_path.is_file():
            raise ConversionError(f"{command[0]} did not produce {output_path}")
        completed = True
    finally:
        # A failed, killed or timed-out run can leave a partial file behind.
        if not completed:
            output_path.unlink(missing_ok=True)

    logger.info("converter.completed", output=str(output_path))
    return output_path
