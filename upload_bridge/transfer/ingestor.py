"""
Upload Ingestor

Writes the files of a multipart upload into the downloads directory as the
body streams in.

Fields are handled strictly in arrival order, one at a time. Each file is
flushed and closed before the next field is read from the body. There is no
rollback: if a later field fails, files written for earlier fields stay on
disk.

Storage Layout:
```
<downloads_dir>/
├── .<filename>.part  # while the field is still arriving
└── <filename>        # replaced once the field is complete
```

The downloads directory is expected to exist already.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, asdict
from pathlib import Path, PureWindowsPath
from typing import AsyncIterator, List, Optional
from weakref import WeakValueDictionary

import aiofiles
import aiofiles.os

from .multipart import MultipartStream, PartEvent, PartHeaders
from ..errors import InvalidFilename, MissingFieldMetadata, UploadWriteError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024  # 256KB


@dataclass
class UploadedFile:
    """A file field announced by its part headers."""
    field_name: str
    filename: str
    content_type: str


@dataclass
class SavedFile:
    """A file that has been written to disk."""
    filename: str
    content_type: str
    size: int
    path: Path

    def to_dict(self) -> dict:
        data = asdict(self)
        data['path'] = str(self.path)
        return data


def safe_filename(filename: str) -> str:
    """
    Reduce a client-supplied filename to its final path component.

    Both '/' and '\\' count as separators.

    Raises:
        InvalidFilename: nothing usable is left
    """
    name = PureWindowsPath(filename).name
    if name in ('', '.', '..'):
        raise InvalidFilename(f"Unusable filename: {filename!r}")
    return name


class _PartWriter:
    """Streams one file field to disk while holding its destination's lock."""

    def __init__(self, path: Path, lock: asyncio.Lock, chunk_size: int):
        self.path = path
        self.partial = path.with_name(f".{path.name}.part")
        self.chunk_size = chunk_size
        self.written = 0

        self._lock = lock
        self._file = None
        self._buffer = bytearray()
        self._released = False

    def _write_error(self, e: OSError) -> UploadWriteError:
        return UploadWriteError(f"Cannot write {self.path}: {e}")

    async def open(self):
        await self._lock.acquire()
        try:
            self._file = await aiofiles.open(self.partial, 'wb')
        except BaseException as e:
            self._release()
            if isinstance(e, OSError):
                raise self._write_error(e) from e
            raise

    async def write(self, data: bytes):
        self._buffer += data
        if len(self._buffer) >= self.chunk_size:
            await self._flush_buffer()

    async def _flush_buffer(self):
        if not self._buffer:
            return
        try:
            await self._file.write(bytes(self._buffer))
        except OSError as e:
            raise self._write_error(e) from e
        self.written += len(self._buffer)
        self._buffer.clear()

    async def commit(self):
        """Flush, close and move the file into place."""
        try:
            await self._flush_buffer()
            await self._file.flush()
            await self._file.close()
            await aiofiles.os.replace(self.partial, self.path)
        except BaseException as e:
            await self.abort()
            if isinstance(e, OSError):
                raise self._write_error(e) from e
            raise
        self._release()

    async def abort(self):
        """Discard the partial file; an existing file at the destination is left alone."""
        if self._released:
            return
        try:
            if self._file is not None and not self._file.closed:
                await self._file.close()
            with contextlib.suppress(FileNotFoundError):
                await aiofiles.os.remove(self.partial)
        finally:
            self._release()

    def _release(self):
        if not self._released:
            self._released = True
            self._lock.release()


class UploadIngestor:
    """
    Saves multipart file fields to a directory.

    Writes to the same destination are serialized; the last writer wins.
    """

    def __init__(self, downloads_dir: Path, chunk_size: int = CHUNK_SIZE):
        """
        Initialize the ingestor.

        Args:
            downloads_dir: Directory that receives the files
            chunk_size: Bytes buffered per disk write
        """
        self.downloads_dir = Path(downloads_dir)
        self.chunk_size = chunk_size

        self._locks: 'WeakValueDictionary[Path, asyncio.Lock]' = WeakValueDictionary()

        # Statistics
        self.files_saved = 0
        self.bytes_saved = 0

    def destination(self, filename: str) -> Path:
        """Get the path a file with this name is saved to."""
        return self.downloads_dir / safe_filename(filename)

    def _lock_for(self, path: Path) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[path] = lock
        return lock

    @staticmethod
    def extract(part: PartHeaders) -> UploadedFile:
        """
        Check a part carries what is needed to save it.

        Raises:
            MissingFieldMetadata: no filename or no content type
        """
        if part.filename is None:
            raise MissingFieldMetadata(part.name, "filename")
        if not part.content_type:
            raise MissingFieldMetadata(part.name, "content type")
        return UploadedFile(
            field_name=part.name,
            filename=part.filename,
            content_type=part.content_type,
        )

    async def ingest(self, content_type: Optional[str],
                     body: AsyncIterator[bytes]) -> List[SavedFile]:
        """
        Save every field of a multipart body as it arrives.

        Args:
            content_type: The request's Content-Type header (None when absent)
            body: The request body

        Returns:
            The saved files, in the order they were written

        Raises:
            MalformedUpload: the body is not valid multipart/form-data
            MissingFieldMetadata: a field lacks filename or content type
            InvalidFilename: a filename has no usable component
            UploadWriteError: a file could not be written
        """
        # No Content-Type means an empty form
        if not content_type:
            return []

        parser = MultipartStream(content_type)
        saved: List[SavedFile] = []
        uploaded: Optional[UploadedFile] = None
        writer: Optional[_PartWriter] = None

        try:
            async for chunk in body:
                for event, value in parser.feed(chunk):
                    if event is PartEvent.BEGIN:
                        uploaded = self.extract(value)
                        writer = await self._open(uploaded)
                    elif event is PartEvent.DATA:
                        await writer.write(value)
                    else:
                        await writer.commit()
                        saved.append(self._record(uploaded, writer))
                        uploaded, writer = None, None
            parser.close()
        except BaseException:
            if writer is not None:
                await writer.abort()
            raise

        return saved

    async def _open(self, uploaded: UploadedFile) -> _PartWriter:
        path = self.destination(uploaded.filename)
        writer = _PartWriter(path, self._lock_for(path), self.chunk_size)
        await writer.open()
        return writer

    def _record(self, uploaded: UploadedFile, writer: _PartWriter) -> SavedFile:
        logger.info(
            f"`{uploaded.filename}`: Content-Type: `{uploaded.content_type}`, "
            f"{writer.written} bytes"
        )
        logger.info(f"Saved at `{writer.path}`")

        self.files_saved += 1
        self.bytes_saved += writer.written

        return SavedFile(
            filename=writer.path.name,
            content_type=uploaded.content_type,
            size=writer.written,
            path=writer.path,
        )

    def get_stats(self) -> dict:
        """Get ingestor statistics."""
        return {
            'downloads_dir': str(self.downloads_dir),
            'files_saved': self.files_saved,
            'bytes_saved': self.bytes_saved,
        }
