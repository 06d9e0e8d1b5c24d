"""
Write-Ahead Log (WAL) backed queue adapter.

Durable queue that survives process restarts. Every push and every removal is
appended to a journal; list() replays the journal.

Record format: [4 bytes: length][JSON payload][4 bytes: CRC32 checksum]
"""

import asyncio
import json
import os
import struct
import zlib
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from aiofiles import open as aio_open

from ..config import QueueSettings
from .exceptions import QueueError
from .queue import QueueAdapter, QueueItem, new_item_id

logger = structlog.get_logger(__name__)

_LENGTH = struct.Struct('<I')

OP_PUSH = "push"
OP_REMOVE = "remove"


def encode_record(record: Dict[str, Any]) -> bytes:
    """Frame a journal record as [length][data][checksum]."""
    data = json.dumps(record, separators=(',', ':')).encode('utf-8')
    return _LENGTH.pack(len(data)) + data + _LENGTH.pack(zlib.crc32(data))


async def _fsync(fd: int) -> None:
    """Flush a file descriptor to disk without blocking the event loop."""
    await asyncio.get_running_loop().run_in_executor(None, os.fsync, fd)


def scan_records(raw: bytes, source: str = "") -> Tuple[List[Dict[str, Any]], int]:
    """
    Decode framed records from journal bytes.

    Corrupted records are skipped; a truncated tail ends the scan.

    Returns:
        Decoded records and the offset just past the last complete record
    """
    records: List[Dict[str, Any]] = []
    offset = 0
    size = len(raw)

    while offset < size:
        if offset + 4 > size:
            logger.warning("Truncated record length", journal=source, offset=offset)
            break
        length = _LENGTH.unpack_from(raw, offset)[0]
        data_start = offset + 4
        data_end = data_start + length

        if data_end + 4 > size:
            logger.warning("Incomplete record at journal tail", journal=source, offset=offset)
            break

        entry_data = raw[data_start:data_end]
        checksum = _LENGTH.unpack_from(raw, data_end)[0]
        offset = data_end + 4

        calculated_checksum = zlib.crc32(entry_data)
        if checksum != calculated_checksum:
            logger.error(
                "Checksum mismatch",
                journal=source,
                expected=checksum,
                calculated=calculated_checksum
            )
            continue

        try:
            records.append(json.loads(entry_data.decode('utf-8')))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error("Failed to parse record JSON", journal=source, error=str(e))
            continue

    return records, offset


def replay(records: Iterable[Dict[str, Any]]) -> List[QueueItem]:
    """Fold journal records into the live items, in push order."""
    live: Dict[str, QueueItem] = {}
    for record in records:
        op = record.get("op")
        if op == OP_PUSH:
            live[record["id"]] = QueueItem(
                id=record["id"],
                data=record.get("data"),
                created_at=record.get("ts", 0.0),
            )
        elif op == OP_REMOVE:
            for item_id in record.get("ids", []):
                live.pop(item_id, None)
        else:
            logger.warning("Unknown journal operation, skipping", op=op)
    return list(live.values())


class FileQueue(QueueAdapter):
    """
    Journal-backed durable queue.

    Features:
    - Append-only binary journal with checksums
    - Replay on list() to recover pending items after restart
    - Compaction once every item is removed or the journal grows too large
    - Async file operations
    """

    def __init__(self, settings: QueueSettings):
        self.settings = settings
        self.journal_path = settings.journal_path
        self._live: Optional[Dict[str, QueueItem]] = None
        self._lock = asyncio.Lock()

        self._ensure_root()
        logger.info("File queue initialized", journal=str(self.journal_path))

    def _ensure_root(self) -> None:
        """Create queue root directory if it doesn't exist."""
        try:
            self.settings.root_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise QueueError(
                "Error creating queue root directory",
                details={"root_path": str(self.settings.root_path), "error": str(e)}
            ) from e

    async def _load(self) -> Dict[str, QueueItem]:
        """Replay the journal once and keep the live index in memory."""
        if self._live is not None:
            return self._live

        items: List[QueueItem] = []
        if self.journal_path.exists():
            try:
                async with aio_open(self.journal_path, 'rb') as f:
                    raw = await f.read()
            except OSError as e:
                raise QueueError("Error reading queue journal", details={"error": str(e)}) from e

            records, valid_end = scan_records(raw, str(self.journal_path))
            items = replay(records)
            if valid_end < len(raw):
                await self._truncate(valid_end, len(raw))

        self._live = {item.id: item for item in items}
        logger.debug("Journal replayed", journal=str(self.journal_path), live_items=len(self._live))
        return self._live

    async def _truncate(self, valid_end: int, size: int) -> None:
        """Cut a partially written record off the journal tail."""
        try:
            async with aio_open(self.journal_path, 'r+b') as f:
                await f.truncate(valid_end)
                await f.flush()
                await _fsync(f.fileno())
        except OSError as e:
            raise QueueError(
                "Error truncating queue journal",
                details={"valid_bytes": valid_end, "error": str(e)}
            ) from e

        logger.warning(
            "Dropped incomplete journal tail",
            journal=str(self.journal_path),
            dropped_bytes=size - valid_end
        )

    async def _append(self, record: Dict[str, Any]) -> None:
        """Append a single framed record to the journal."""
        try:
            data = encode_record(record)
            async with aio_open(self.journal_path, 'ab') as f:
                await f.write(data)
                if self.settings.fsync:
                    await f.flush()
                    await _fsync(f.fileno())
        except (OSError, TypeError, ValueError) as e:
            raise QueueError(
                "Error appending to queue journal",
                details={"op": record.get("op"), "error": str(e)}
            ) from e

    async def push(self, log: Any) -> QueueItem:
        item = QueueItem(id=new_item_id(), data=log)
        async with self._lock:
            live = await self._load()
            await self._append({"op": OP_PUSH, "id": item.id, "ts": item.created_at, "data": log})
            live[item.id] = item
        return item

    async def list(self) -> List[QueueItem]:
        async with self._lock:
            live = await self._load()
            return list(live.values())

    async def remove(self, items: Sequence[QueueItem]) -> None:
        async with self._lock:
            live = await self._load()
            ids = [item.id for item in items if item.id in live]
            if not ids:
                return

            await self._append({"op": OP_REMOVE, "ids": ids})
            for item_id in ids:
                live.pop(item_id, None)

            if self._should_compact(live):
                await self._compact(live)

        logger.debug("Removed items from file queue", count=len(ids))

    def _should_compact(self, live: Dict[str, QueueItem]) -> bool:
        if not live:
            return True
        try:
            return self.journal_path.stat().st_size >= self.settings.compact_threshold_bytes
        except FileNotFoundError:
            return False

    async def _compact(self, live: Dict[str, QueueItem]) -> None:
        """Rewrite the journal so it only holds live items."""
        tmp_path = self.journal_path.with_suffix('.compact')
        try:
            async with aio_open(tmp_path, 'wb') as f:
                for item in live.values():
                    await f.write(encode_record(
                        {"op": OP_PUSH, "id": item.id, "ts": item.created_at, "data": item.data}
                    ))
                await f.flush()
                await _fsync(f.fileno())
            os.replace(tmp_path, self.journal_path)
        except OSError as e:
            raise QueueError("Error compacting queue journal", details={"error": str(e)}) from e

        logger.info("Compacted queue journal", journal=str(self.journal_path), live_items=len(live))
