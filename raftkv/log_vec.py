"""A persistent, append-only sequence of log entries stored in two files."""

from __future__ import annotations

import os
import struct
import threading
from typing import Iterator, Union, overload

from .messages import Entry

_OFFSET = struct.Struct("<Q")


def get_data_path(directory: str) -> str:
    """Path of the file that holds encoded entries."""
    if not directory:
        return "log.data"
    return os.path.join(directory, "log.data")


def get_meta_path(directory: str) -> str:
    """Path of the file that holds each entry's offset in the data file."""
    if not directory:
        return "meta.data"
    return os.path.join(directory, "meta.data")


class LogVec:
    """A list-like log of entries persisted to a data file and an offset index."""

    def __init__(self, directory: str) -> None:
        if directory and not os.path.exists(directory):
            os.makedirs(directory)
        self.directory = directory
        self.data_path = get_data_path(directory)
        self.meta_path = get_meta_path(directory)

        need_create = not (os.path.exists(self.data_path) and os.path.exists(self.meta_path))
        mode = "w+b" if need_create else "r+b"
        self._data = open(self.data_path, mode, buffering=0)
        try:
            self._meta = open(self.meta_path, mode, buffering=0)
        except OSError:
            self._data.close()
            raise
        self._lock = threading.RLock()
        self._count = os.fstat(self._meta.fileno()).st_size // _OFFSET.size

    def append(self, entry: Entry) -> None:
        """Append one entry to the end of the log."""
        encoded = entry.encode()
        with self._lock:
            offset = self._data_size()
            self._data.seek(offset)
            self._data.write(encoded)
            self._meta.seek(self._count * _OFFSET.size)
            self._meta.write(_OFFSET.pack(offset))
            self._count += 1

    @overload
    def __getitem__(self, index: int) -> Entry: ...

    @overload
    def __getitem__(self, index: slice) -> list[Entry]: ...

    def __getitem__(self, index: Union[int, slice]) -> Union[Entry, list[Entry]]:
        with self._lock:
            if isinstance(index, slice):
                return [self._read(i) for i in range(*index.indices(self._count))]
            position = index + self._count if index < 0 else index
            if not 0 <= position < self._count:
                raise IndexError(f"log index {index} out of range")
            return self._read(position)

    def __len__(self) -> int:
        with self._lock:
            return self._count

    def __iter__(self) -> Iterator[Entry]:
        position = 0
        while True:
            with self._lock:
                if position >= self._count:
                    return
                entry = self._read(position)
            yield entry
            position += 1

    def __reversed__(self) -> Iterator[Entry]:
        position = len(self) - 1
        while position >= 0:
            with self._lock:
                if position >= self._count:
                    position = self._count - 1
                    continue
                entry = self._read(position)
            yield entry
            position -= 1

    def last(self) -> Entry:
        """Return the last entry; IndexError if the log is empty."""
        with self._lock:
            if not self._count:
                raise IndexError("last() on an empty log")
            return self._read(self._count - 1)

    def sync(self) -> None:
        """Force both files to stable storage."""
        with self._lock:
            os.fsync(self._data.fileno())
            os.fsync(self._meta.fileno())

    def truncate_from(self, index: int) -> None:
        """Drop the entry at `index` and every entry after it."""
        with self._lock:
            if index < 0:
                raise IndexError(f"log index {index} out of range")
            if index >= self._count:
                return
            new_data_size = self._offset(index) if index > 0 else 0
            self._data.truncate(new_data_size)
            self._meta.truncate(index * _OFFSET.size)
            self._count = index

    def close(self) -> None:
        """Sync and close the underlying files."""
        with self._lock:
            if self._data.closed:
                return
            self.sync()
            self._data.close()
            self._meta.close()

    def __enter__(self) -> "LogVec":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _data_size(self) -> int:
        return os.fstat(self._data.fileno()).st_size

    def _offset(self, position: int) -> int:
        self._meta.seek(position * _OFFSET.size)
        raw = self._meta.read(_OFFSET.size)
        if len(raw) != _OFFSET.size:
            raise ValueError(f"offset index is corrupt at entry {position}")
        return _OFFSET.unpack(raw)[0]

    def _read(self, position: int) -> Entry:
        start = self._offset(position)
        end = self._offset(position + 1) if position + 1 < self._count else self._data_size()
        self._data.seek(start)
        return Entry.decode(self._data.read(end - start))