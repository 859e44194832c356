"""ZIP utility for streaming a directory tree as it is being archived."""
import logging
import os
import zipfile
from pathlib import Path
from typing import Iterator, List

from .constants import BLOCK_SIZE
from .errors import StreamingFailure

logger = logging.getLogger(__name__)


class _ChunkSink:
    """
    Write-only file object that collects what ZipFile writes so it can be
    handed out in chunks. It has no seek() or tell(), which makes ZipFile
    fall back to data descriptors instead of rewriting local headers.
    """

    def __init__(self):
        self._chunks: List[bytes] = []

    def write(self, data: bytes) -> int:
        if data:
            self._chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


class ZipUtil:
    """Utility class for streaming ZIP archives of installed trees."""

    def __init__(self, block_size: int = BLOCK_SIZE):
        self.block_size = block_size

    def stream_directory(self, base_dir: Path, subtree: str) -> Iterator[bytes]:
        """
        Yield a ZIP archive of base_dir/subtree chunk by chunk.

        Entries are named relative to base_dir with forward slashes. Each
        directory, the subtree root included, gets its own stored entry so
        empty directories survive. Files are deflated and copied in
        block_size pieces, so neither a file nor the archive is ever held
        in memory whole.

        Raises:
            StreamingFailure: If reading the tree fails part way through.
        """
        sink = _ChunkSink()
        root = base_dir / subtree

        try:
            with zipfile.ZipFile(sink, "w", zipfile.ZIP_DEFLATED, strict_timestamps=False) as zf:
                for path in self._walk(root):
                    arcname = path.relative_to(base_dir).as_posix()
                    if path.is_dir():
                        self._write_directory(zf, path, arcname)
                    else:
                        yield from self._write_file(zf, sink, path, arcname)

                    data = sink.drain()
                    if data:
                        yield data
        except OSError as e:
            logger.exception("Error archiving %s", root)
            raise StreamingFailure(f"Error zipping files: {e}") from e

        # Central directory written on close
        data = sink.drain()
        if data:
            yield data

    def _walk(self, directory: Path) -> Iterator[Path]:
        """Pre-order walk with children in name order."""
        yield directory

        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda entry: entry.name)

        for entry in entries:
            path = Path(entry.path)
            if entry.is_symlink():
                if entry.is_dir() or not entry.is_file():
                    logger.warning("Skipping symlink %s", path)
                    continue
                yield path
            elif entry.is_dir():
                yield from self._walk(path)
            else:
                yield path

    def _write_directory(self, zf: zipfile.ZipFile, path: Path, arcname: str) -> None:
        # Header only, no data descriptor
        zf.write(path, arcname)

    def _write_file(self, zf: zipfile.ZipFile, sink: _ChunkSink, path: Path, arcname: str) -> Iterator[bytes]:
        zinfo = zipfile.ZipInfo.from_file(path, arcname, strict_timestamps=False)
        zinfo.compress_type = zipfile.ZIP_DEFLATED

        with open(path, "rb") as src, zf.open(zinfo, "w") as dest:
            while True:
                block = src.read(self.block_size)
                if not block:
                    break
                dest.write(block)
                data = sink.drain()
                if data:
                    yield data
