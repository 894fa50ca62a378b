"""
Catalog of files a provider advertises.

A CatalogSnapshot is captured from a FileStore once, when a session begins,
and is never refreshed while that session lives. Identifiers are 1-based
positions in the snapshot.
"""

import os
import logging
from dataclasses import dataclass
from typing import BinaryIO, Iterable, List, Optional, Tuple

from .protocol import LIST_SEPARATOR, split_list_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileDescriptor:
    name: str
    size_bytes: int


@dataclass(frozen=True)
class CatalogSnapshot:
    entries: Tuple[FileDescriptor, ...] = ()

    @classmethod
    def of(cls, descriptors: Iterable[FileDescriptor]) -> "CatalogSnapshot":
        return cls(tuple(descriptors))

    @classmethod
    def capture(cls, file_store: "FileStore") -> "CatalogSnapshot":
        """Take an immutable copy of what the file store lists right now."""
        return cls.of(file_store.list_catalog())

    @classmethod
    def from_wire(cls, names_payload: str, sizes_payload: str) -> "CatalogSnapshot":
        """
        Rebuild a snapshot from READY and SIZES payloads.

        Raises ValueError if the lists differ in length or a size is not a
        non-negative integer.
        """
        names = split_list_payload(names_payload)
        sizes = split_list_payload(sizes_payload)
        if len(names) != len(sizes):
            raise ValueError(
                f"Catalog has {len(names)} names but {len(sizes)} sizes"
            )

        descriptors = []
        for name, size in zip(names, sizes):
            size_bytes = int(size)
            if size_bytes < 0:
                raise ValueError(f"Negative size for {name!r}: {size_bytes}")
            descriptors.append(FileDescriptor(name, size_bytes))
        return cls.of(descriptors)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def names(self) -> List[str]:
        return [d.name for d in self.entries]

    @property
    def sizes(self) -> List[int]:
        return [d.size_bytes for d in self.entries]

    def contains_id(self, file_id: int) -> bool:
        return 1 <= file_id <= len(self.entries)

    def get(self, file_id: int) -> Optional[FileDescriptor]:
        """Descriptor for a 1-based id, or None when out of range."""
        if not self.contains_id(file_id):
            return None
        return self.entries[file_id - 1]


class FileStore(object):
    """
    Contract for the provider's file source.
    """

    def list_catalog(self) -> List[FileDescriptor]:
        raise NotImplementedError()

    def open(self, name: str) -> BinaryIO:
        raise NotImplementedError()


class DirectoryFileStore(FileStore):
    """Serves the regular files found directly inside one directory."""

    def __init__(self, root: str):
        self.root = root

    def list_catalog(self) -> List[FileDescriptor]:
        descriptors = []
        for name in sorted(os.listdir(self.root)):
            path = os.path.join(self.root, name)
            if not os.path.isfile(path):
                continue
            if LIST_SEPARATOR in name:
                logger.warning("Skipping %s: name contains %r", name, LIST_SEPARATOR)
                continue
            descriptors.append(FileDescriptor(name, os.path.getsize(path)))
        return descriptors

    def open(self, name: str) -> BinaryIO:
        if os.path.basename(name) != name:
            raise FileNotFoundError(f"Not a catalog entry: {name}")
        return open(os.path.join(self.root, name), "rb")
