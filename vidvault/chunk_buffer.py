import shutil
import threading
from pathlib import Path

from vidvault.config import settings


class ChunkBuffer:
    """Ephemeral holding area for chunk bytes until reassembly.

    Nothing here is guaranteed to survive a process restart.
    """

    def write(self, session_id: str, index: int, data: bytes) -> None:
        raise NotImplementedError

    def read(self, session_id: str, index: int) -> bytes:
        raise NotImplementedError

    def indices(self, session_id: str) -> set[int]:
        raise NotImplementedError

    def discard(self, session_id: str) -> None:
        raise NotImplementedError

    def session_ids(self) -> set[str]:
        raise NotImplementedError


class MemoryChunkBuffer(ChunkBuffer):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._chunks: dict[str, dict[int, bytes]] = {}

    def write(self, session_id: str, index: int, data: bytes) -> None:
        with self._lock:
            self._chunks.setdefault(session_id, {})[index] = bytes(data)

    def read(self, session_id: str, index: int) -> bytes:
        with self._lock:
            return self._chunks[session_id][index]

    def indices(self, session_id: str) -> set[int]:
        with self._lock:
            return set(self._chunks.get(session_id, {}))

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._chunks.pop(session_id, None)

    def session_ids(self) -> set[str]:
        with self._lock:
            return set(self._chunks)


class LocalChunkBuffer(ChunkBuffer):
    """Spools chunks to a scratch directory, one file per index."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _session_dir(self, session_id: str) -> Path:
        return self.root / "chunks" / session_id

    def write(self, session_id: str, index: int, data: bytes) -> None:
        target = self._session_dir(session_id) / f"chunk_{index}"
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_suffix(".part")
        partial.write_bytes(data)
        partial.replace(target)

    def read(self, session_id: str, index: int) -> bytes:
        return (self._session_dir(session_id) / f"chunk_{index}").read_bytes()

    def indices(self, session_id: str) -> set[int]:
        base = self._session_dir(session_id)
        if not base.exists():
            return set()
        return {int(path.name.removeprefix("chunk_")) for path in base.glob("chunk_*") if path.suffix != ".part"}

    def discard(self, session_id: str) -> None:
        shutil.rmtree(self._session_dir(session_id), ignore_errors=True)

    def session_ids(self) -> set[str]:
        base = self.root / "chunks"
        if not base.exists():
            return set()
        return {path.name for path in base.iterdir() if path.is_dir()}


def build_chunk_buffer() -> ChunkBuffer:
    backend = settings.chunk_buffer_backend.lower()
    if backend == "memory":
        return MemoryChunkBuffer()
    if backend == "local":
        return LocalChunkBuffer(settings.storage_root)
    raise ValueError(f"unsupported chunk buffer backend: {settings.chunk_buffer_backend}")
