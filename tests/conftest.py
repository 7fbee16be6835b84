"""Shared fixtures: an in-memory SFTP handle standing in for a live mailbox."""

import io
import posixpath
from typing import Dict, List, Optional, Set, Tuple

import pytest

from onion_mailbox import DirectoryNotFound, RemoteEntry, RemoveError, TransferError


class BrokenStream(io.BytesIO):
    """Yields the first chunk, then fails like a dropped channel."""

    def __init__(self, data: bytes):
        super().__init__(data)
        self._reads = 0

    def read(self, size=-1):
        self._reads += 1
        if self._reads > 1:
            raise IOError("channel closed")
        return super().read(1)


class FakeSFTPHandle:
    def __init__(self, files: Optional[Dict[str, bytes]] = None, dirs: Optional[Set[str]] = None):
        self.files: Dict[str, bytes] = dict(files or {})
        self.dirs: Set[str] = set(dirs or set())
        self.calls: List[Tuple[str, str]] = []
        self.fail_open: Set[str] = set()
        self.fail_read: Set[str] = set()
        self.fail_remove: Set[str] = set()
        self.closed = False

    def list_directory(self, path: str) -> List[RemoteEntry]:
        self.calls.append(("list", path))
        if path not in self.dirs:
            raise DirectoryNotFound(f"remote directory {path} not found")
        entries = [RemoteEntry(posixpath.basename(p), False) for p in self.files if posixpath.dirname(p) == path]
        entries += [RemoteEntry(posixpath.basename(d), True) for d in self.dirs if posixpath.dirname(d) == path]
        return entries

    def open_for_read(self, path: str):
        self.calls.append(("open", path))
        if path in self.fail_open or path not in self.files:
            raise TransferError(f"open failed: {path}")
        if path in self.fail_read:
            return BrokenStream(self.files[path])
        return io.BytesIO(self.files[path])

    def remove(self, path: str) -> None:
        self.calls.append(("remove", path))
        if path in self.fail_remove or path not in self.files:
            raise RemoveError(f"remove failed: {path}")
        del self.files[path]

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


@pytest.fixture
def fake_handle():
    return FakeSFTPHandle(dirs={"inbox"})
