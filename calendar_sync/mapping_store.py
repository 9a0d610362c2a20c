"""
Bidirectional identifier index between Google events and Discord events.

The two directional tables are private and only change through put() and
the remove_* methods, each of which updates both tables in one synchronous
step. Persistence lives in MappingFile and is a separate, fallible step.
"""

import os
import json
import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from common.errors import PersistenceError

logger = logging.getLogger("MappingStore")

# Keys used in the durable mapping file
REMOTE_TO_LOCAL_KEY = "googleToDiscord"
LOCAL_TO_REMOTE_KEY = "discordToGoogle"


class MappingStore:

    def __init__(self):
        self._remote_to_local: Dict[str, str] = {}
        self._local_to_remote: Dict[str, str] = {}

    def get_local(self, remote_id: str) -> Optional[str]:
        return self._remote_to_local.get(remote_id)

    def get_remote(self, local_id: str) -> Optional[str]:
        return self._local_to_remote.get(local_id)

    def put(self, remote_id: str, local_id: str) -> None:
        # Evict any pair that already uses either id so both tables stay inverse
        self.remove_by_remote(remote_id)
        self.remove_by_local(local_id)
        self._remote_to_local[remote_id] = local_id
        self._local_to_remote[local_id] = remote_id

    def remove_by_remote(self, remote_id: str) -> Optional[str]:
        local_id = self._remote_to_local.pop(remote_id, None)
        if local_id is not None:
            self._local_to_remote.pop(local_id, None)
        return local_id

    def remove_by_local(self, local_id: str) -> Optional[str]:
        remote_id = self._local_to_remote.pop(local_id, None)
        if remote_id is not None:
            self._remote_to_local.pop(remote_id, None)
        return remote_id

    def items(self) -> Iterator[Tuple[str, str]]:
        """Iterate (remote_id, local_id) pairs over a copy of the index."""
        return iter(list(self._remote_to_local.items()))

    def counts(self) -> Dict[str, int]:
        return {
            REMOTE_TO_LOCAL_KEY: len(self._remote_to_local),
            LOCAL_TO_REMOTE_KEY: len(self._local_to_remote),
        }

    def __len__(self) -> int:
        return len(self._remote_to_local)

    def __contains__(self, remote_id: object) -> bool:
        return remote_id in self._remote_to_local

    def snapshot(self) -> Dict[str, Dict[str, str]]:
        return {
            REMOTE_TO_LOCAL_KEY: dict(self._remote_to_local),
            LOCAL_TO_REMOTE_KEY: dict(self._local_to_remote),
        }

    def restore(self, data: Dict) -> None:
        """Replace the index with persisted tables.

        The remote→local table is authoritative; the reverse table is rebuilt
        from it and any disagreement is logged.
        """
        remote_to_local = data.get(REMOTE_TO_LOCAL_KEY) or {}
        local_to_remote = data.get(LOCAL_TO_REMOTE_KEY) or {}
        if not isinstance(remote_to_local, dict) or not isinstance(local_to_remote, dict):
            raise ValueError("Mapping tables must be JSON objects")

        self._remote_to_local = {}
        self._local_to_remote = {}
        for remote_id, local_id in remote_to_local.items():
            self.put(str(remote_id), str(local_id))

        rebuilt = self._local_to_remote
        if rebuilt != {str(k): str(v) for k, v in local_to_remote.items()}:
            logger.warning(
                f"Persisted mapping tables disagree ({len(remote_to_local)} Google→Discord, "
                f"{len(local_to_remote)} Discord→Google); rebuilt reverse index from Google→Discord"
            )

        logger.info(
            f"Loaded {len(self._remote_to_local)} Google→Discord and "
            f"{len(self._local_to_remote)} Discord→Google mappings"
        )


class MappingFile:
    """JSON file holding a MappingStore snapshot, replaced whole on each write."""

    def __init__(self, path: str):
        self.path = Path(path)

    def read(self) -> Dict[str, Dict[str, str]]:
        """Return the stored snapshot, or empty tables if the file does not exist."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {REMOTE_TO_LOCAL_KEY: {}, LOCAL_TO_REMOTE_KEY: {}}
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Could not read mapping file {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceError(f"Mapping file {self.path} does not contain a JSON object")
        return data

    def write_sync(self, snapshot: Dict[str, Dict[str, str]]) -> None:
        directory = self.path.parent
        tmp_name = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".mappings-", suffix=".json", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, indent=2)
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"Could not write mapping file {self.path}: {e}") from e

    async def write(self, snapshot: Dict[str, Dict[str, str]]) -> None:
        await asyncio.to_thread(self.write_sync, snapshot)
