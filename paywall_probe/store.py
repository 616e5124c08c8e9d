"""
Content fingerprint store - content-addressed artifact persistence.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from .errors import ArtifactWriteError

logger = logging.getLogger(__name__)

_SUFFIXES = (
    ("json", ".json"),
    ("html", ".html"),
    ("xml", ".xml"),
)


@dataclass(frozen=True)
class StoredArtifact:
    fingerprint: str
    path: Path
    created: bool  # False when an artifact with this fingerprint already existed


def fingerprint(content: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(content).hexdigest()


def _suffix(content_type: str) -> str:
    content_type = (content_type or "").lower()
    for marker, suffix in _SUFFIXES:
        if marker in content_type:
            return suffix
    return ".txt"


class FingerprintStore:
    """
    Writes each distinct byte sequence at most once.

    The store is the only writer of artifacts. Concurrent persist() calls for
    the same bytes result in exactly one write.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self._artifacts: Dict[str, Path] = {}
        self._lock = asyncio.Lock()
        self.writes = 0

    @property
    def artifacts(self) -> Dict[str, Path]:
        """Fingerprint -> artifact path, for everything persisted this run."""
        return dict(self._artifacts)

    def location(self, digest: str) -> Optional[Path]:
        return self._artifacts.get(digest)

    async def persist(self, content: Union[str, bytes], content_type: str = "") -> StoredArtifact:
        """Store `content` unless its fingerprint is already stored."""
        if isinstance(content, str):
            content = content.encode("utf-8")
        digest = fingerprint(content)

        async with self._lock:
            known = self._artifacts.get(digest)
            if known is not None:
                return StoredArtifact(digest, known, created=False)

            existing = self._find_on_disk(digest)
            if existing is not None:
                self._artifacts[digest] = existing
                return StoredArtifact(digest, existing, created=False)

            path = self.root / f"{digest}{_suffix(content_type)}"
            try:
                await asyncio.to_thread(self._write, path, content)
            except OSError as e:
                raise ArtifactWriteError(digest, str(e)) from e

            self.writes += 1
            self._artifacts[digest] = path
            logger.debug(f"Stored artifact {digest[:16]} ({len(content)} bytes)")
            return StoredArtifact(digest, path, created=True)

    def _find_on_disk(self, digest: str) -> Optional[Path]:
        if not self.root.is_dir():
            return None
        for candidate in self.root.glob(f"{digest}.*"):
            if candidate.suffix != ".part":
                return candidate
        return None

    def _write(self, path: Path, content: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        tmp.write_bytes(content)
        tmp.replace(path)
