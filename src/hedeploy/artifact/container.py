"""
Artifact Container - Deterministic ZIP packaging.

Containers are written byte-for-byte reproducibly so the same compiled
module always yields the same artifact digest.
"""

import io
import os
import zipfile
from typing import BinaryIO, List, Tuple, Union

MAX_FILE_SIZE = 100 * 1024 * 1024  # 100MB safety limit

# Fixed timestamp for deterministic builds (2020-01-01 00:00:00)
DETERMINISTIC_TIMESTAMP = (2020, 1, 1, 0, 0, 0)

Source = Union[str, "os.PathLike[str]", BinaryIO]


class ArtifactContainer:
    """
    Deterministic ZIP container for compiled modules.

    All files are written with normalized metadata:
    - Fixed timestamps (2020-01-01 00:00:00)
    - No compression
    - Sorted file ordering
    """

    def __init__(self, source: Source, mode: str = "r", max_file_size: int = MAX_FILE_SIZE):
        if mode not in ("r", "w"):
            raise ValueError(f"Unsupported container mode: {mode!r}")
        self.mode = mode
        self.max_file_size = max_file_size
        self.zip = zipfile.ZipFile(source, mode=mode, compression=zipfile.ZIP_STORED)
        self._pending_files: List[Tuple[str, bytes]] = []

    @classmethod
    def from_bytes(cls, data: bytes, max_file_size: int = MAX_FILE_SIZE) -> "ArtifactContainer":
        return cls(io.BytesIO(data), mode="r", max_file_size=max_file_size)

    def write_file(self, arcname: str, data: bytes):
        """
        Queue a file for writing with normalized metadata.

        Files are written in sorted order when close() is called.
        """
        if self.mode != "w":
            raise ValueError("Cannot write to container opened in read mode")
        if len(data) > self.max_file_size:
            raise ValueError(f"File {arcname} exceeds safety limit of {self.max_file_size} bytes")
        self._pending_files.append((arcname, bytes(data)))

    def _write_deterministic(self, arcname: str, data: bytes):
        info = zipfile.ZipInfo(arcname, date_time=DETERMINISTIC_TIMESTAMP)
        info.compress_type = zipfile.ZIP_STORED
        info.external_attr = 0o644 << 16  # Unix permissions
        info.create_system = 3
        self.zip.writestr(info, data)

    def has_file(self, arcname: str) -> bool:
        return arcname in self.zip.NameToInfo

    def file_size(self, arcname: str) -> int:
        return self.zip.getinfo(arcname).file_size

    def read_file(self, arcname: str) -> bytes:
        info = self.zip.getinfo(arcname)
        if info.file_size > self.max_file_size:
            raise ValueError(f"File {arcname} exceeds safety limit of {self.max_file_size} bytes")
        return self.zip.read(arcname)

    def list_files(self) -> List[str]:
        return sorted(self.zip.namelist())

    def close(self):
        """Close the container, writing pending files in sorted order."""
        if self.mode == "w" and self._pending_files:
            for arcname, data in sorted(self._pending_files, key=lambda x: x[0]):
                self._write_deterministic(arcname, data)
            self._pending_files.clear()
        self.zip.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
