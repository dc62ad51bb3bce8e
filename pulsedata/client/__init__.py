"""Read path for the published data tree."""

from pulsedata.client.loader import (
    DataLoader,
    DataUnavailable,
    FileStaticStore,
    HttpStaticStore,
    LoadResult,
    LocalMiss,
)

__all__ = [
    "DataLoader",
    "DataUnavailable",
    "FileStaticStore",
    "HttpStaticStore",
    "LoadResult",
    "LocalMiss",
]
