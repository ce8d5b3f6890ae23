"""
File persistence of the latest container snapshots.

Each container type has exactly one JSON file, `dump-<container_type>.json`,
in the data directory. Ingest overwrites it; the state endpoint reads it.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

from config.settings import DATA_DIR
from utils.constants import DUMP_FILENAME_TEMPLATE, DUMP_SCHEMA_VERSION
from utils.storage import write_json_atomic

logger = logging.getLogger("pokemmo_link.container_store")


class ContainerStore:
    """
    Reads and writes container dumps.

    Blocking file I/O runs in a worker thread so the event loop keeps
    serving while a large PC dump is written. Writes to one container are
    serialized; the last ingest to start wins.
    """

    def __init__(self, data_dir: Path = DATA_DIR):
        self.data_dir = Path(data_dir)
        self._locks: Dict[str, asyncio.Lock] = {}

    def path_for(self, container_type: str) -> Path:
        return self.data_dir / DUMP_FILENAME_TEMPLATE.format(container_type=container_type)

    async def write(self, container_type: str, envelope: Dict[str, Any]) -> Path:
        """Replace the stored dump for a container type."""
        path = self.path_for(container_type)
        async with self._locks.setdefault(container_type, asyncio.Lock()):
            await asyncio.to_thread(write_json_atomic, path, envelope, 2)
        logger.info(
            f"Stored {container_type} dump",
            extra={"container_type": container_type, "path": str(path)},
        )
        return path

    async def read(self, container_type: str) -> Optional[Dict[str, Any]]:
        """
        Load the stored dump for a container type.

        Returns:
            The envelope, or None if nothing was ingested yet.

        Raises:
            OSError, ValueError: If the file exists but cannot be read or parsed.
        """
        return await asyncio.to_thread(self._read_file, self.path_for(container_type))

    async def load_state(self, container_type: str) -> Dict[str, Any]:
        """Stored dump, or an empty envelope if the container was never captured."""
        envelope = await self.read(container_type)
        if envelope is None:
            logger.debug(f"No {container_type} dump yet, serving empty envelope")
            return empty_envelope(container_type)
        return envelope

    @staticmethod
    def _read_file(path: Path) -> Optional[Dict[str, Any]]:
        try:
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None


def empty_envelope(container_type: str) -> Dict[str, Any]:
    """Envelope served for a container that has never been captured."""
    return {
        "schema_version": DUMP_SCHEMA_VERSION,
        "captured_at_ms": int(time.time() * 1000),
        "source": {
            "packet_class": "unknown",
            "container_id": 0,
            "container_type": container_type,
        },
        "pokemon": [],
    }
