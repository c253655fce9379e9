"""
Failure persistence (dead-letter file).

Undeliverable batches are appended verbatim to ``<save_dir>/<table>_<save_file>``
for manual recovery. There is no rotation and no retry; a failed write is
logged and the batch is lost.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Iterator, Optional, Union

from loguru import logger

from .metrics import BATCHES_PERSISTED_TOTAL


class FailurePersister:
    def __init__(self, save_dir: Union[str, Path], save_file: str = "failed.json"):
        self.save_dir = Path(save_dir)
        self.save_file = save_file
        self._lock = asyncio.Lock()

    def path_for(self, table: str) -> Path:
        return self.save_dir / f"{table}_{self.save_file}"

    async def persist(self, table: str, document: bytes) -> bool:
        """Append ``document`` to the table's failure file. Never raises on I/O errors."""
        path = self.path_for(table)
        async with self._lock:
            try:
                await asyncio.to_thread(self._append, path, document)
            except OSError as exc:
                logger.error(
                    f"[HTTP Output Failure] An error occurred while saving file to disk: "
                    f"{exc} (file={path}, size={len(document)})"
                )
                BATCHES_PERSISTED_TOTAL.labels(table=table, status="error").inc()
                return False

        logger.warning(f"Saved undelivered batch to {path} (size={len(document)})")
        BATCHES_PERSISTED_TOTAL.labels(table=table, status="ok").inc()
        return True

    @staticmethod
    def _append(path: Path, document: bytes) -> None:
        with open(path, "ab") as fh:
            fh.write(document)

    def claim(self, table: str) -> Optional[Path]:
        """Move the table's failure file aside for replay; new failures start a fresh file.

        A claim left behind by an interrupted replay is resumed: new failures are
        appended to it rather than replacing it.
        """
        path = self.path_for(table)
        claimed = path.with_name(path.name + ".replaying")
        if not path.exists():
            return claimed if claimed.exists() else None
        if not claimed.exists():
            path.rename(claimed)
            return claimed

        logger.warning(f"Resuming unfinished replay {claimed}")
        with open(claimed, "ab") as out, open(path, "rb") as src:
            shutil.copyfileobj(src, out)
        path.unlink()
        return claimed

    @staticmethod
    def iter_documents(path: Path) -> Iterator[str]:
        """Yield the persisted JSON lines in ``path`` (nothing if it does not exist)."""
        if not path.exists():
            return
        with open(path, "r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    yield line
