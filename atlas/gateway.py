"""
ATLAS Persistence Gateway

Repository-style access to the remote tables the core depends on. The core
only ever needs:
- fetch by id
- conditional update by id (compare-and-swap on expected column values)
- insert / delete
- equality-filtered list and count

Two implementations share one document layout ({"tables": {name: {id: row}}}):
- InMemoryGateway: process-local, for tests and ephemeral runs
- JsonFileGateway: whole document in one JSON file, written atomically

Both serialize access with an asyncio.Lock, so the read-compare-write inside
update() cannot interleave with another writer. JsonFileGateway does its file
I/O in a worker thread so the event loop keeps serving while it waits.

An unreadable state file raises StateLoadError. It is never treated as an
empty document, since the next write would replace every stored row.
"""

import asyncio
import copy
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List

from .models import ReasonCode, ServiceResult

logger = logging.getLogger("gateway")

# -----------------------------------------------------------------------------
# Tables
# -----------------------------------------------------------------------------
MODELS_TABLE = "models"
FORGES_TABLE = "forges"
LICENSES_TABLE = "licenses"
CAPTURES_TABLE = "captures"
CERTIFICATES_TABLE = "certificates"

TABLES = frozenset({MODELS_TABLE, FORGES_TABLE, LICENSES_TABLE, CAPTURES_TABLE, CERTIFICATES_TABLE})


class StateLoadError(Exception):
    """The stored state document exists but cannot be read or parsed."""

    def __init__(self, path: Path, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Cannot load state file {path}: {cause}")


def _empty_state() -> Dict[str, Any]:
    return {
        "tables": {name: {} for name in TABLES},
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


def _matches(row: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(row.get(column) == value for column, value in filters.items())


# -----------------------------------------------------------------------------
# Gateway Interface
# -----------------------------------------------------------------------------
class Gateway:
    """
    Persistence interface consumed by the services.

    Implementations must make update() atomic with respect to its
    `expected` check.
    """

    async def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def update(
        self,
        table: str,
        record_id: str,
        updates: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> ServiceResult:
        raise NotImplementedError

    async def delete(self, table: str, record_id: str) -> bool:
        raise NotImplementedError

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        raise NotImplementedError


# -----------------------------------------------------------------------------
# Document Gateway (shared implementation)
# -----------------------------------------------------------------------------
class DocumentGateway(Gateway):
    """
    Gateway over a single state document. Subclasses decide where the
    document lives by implementing _load_state() and _save_state().

    Set `blocking_io` when those hooks touch the filesystem; they then run in
    a worker thread via asyncio.to_thread.
    """

    blocking_io = False

    def __init__(self):
        self._lock = asyncio.Lock()

    # Storage hooks -----------------------------------------------------------

    def _load_state(self) -> Dict[str, Any]:
        raise NotImplementedError

    def _save_state(self, state: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _read_state(self) -> Dict[str, Any]:
        if self.blocking_io:
            return await asyncio.to_thread(self._load_state)
        return self._load_state()

    async def _write_state(self, state: Dict[str, Any]) -> None:
        if self.blocking_io:
            await asyncio.to_thread(self._save_state, state)
        else:
            self._save_state(state)

    # Helpers -----------------------------------------------------------------

    @staticmethod
    def _table(state: Dict[str, Any], table: str) -> Dict[str, Dict[str, Any]]:
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")
        return state.setdefault("tables", {}).setdefault(table, {})

    # Operations --------------------------------------------------------------

    async def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            row = self._table(await self._read_state(), table).get(record_id)
            return copy.deepcopy(row) if row is not None else None

    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        row = copy.deepcopy(record)
        row.setdefault("id", str(uuid.uuid4()))
        async with self._lock:
            state = await self._read_state()
            rows = self._table(state, table)
            if row["id"] in rows:
                raise ValueError(f"Duplicate id '{row['id']}' in table '{table}'")
            rows[row["id"]] = row
            await self._write_state(state)
        logger.debug(f"Inserted {table}/{row['id']}")
        return copy.deepcopy(row)

    async def update(
        self,
        table: str,
        record_id: str,
        updates: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> ServiceResult:
        """
        Update a row in place.

        When `expected` is given, the update applies only if every listed
        column still holds the expected value; otherwise CONFLICT.
        """
        async with self._lock:
            state = await self._read_state()
            rows = self._table(state, table)
            row = rows.get(record_id)
            if row is None:
                return ServiceResult.fail(ReasonCode.NOT_FOUND, f"{table}/{record_id} not found")

            if expected and not _matches(row, expected):
                stale = {k: row.get(k) for k in expected}
                logger.info(f"Conditional update lost on {table}/{record_id}: expected {expected}, found {stale}")
                return ServiceResult.fail(
                    ReasonCode.CONFLICT,
                    f"{table}/{record_id} changed since it was read",
                )

            row.update(copy.deepcopy(updates))
            await self._write_state(state)
            return ServiceResult.ok(copy.deepcopy(row), message="Updated")

    async def delete(self, table: str, record_id: str) -> bool:
        async with self._lock:
            state = await self._read_state()
            rows = self._table(state, table)
            if record_id not in rows:
                return False
            del rows[record_id]
            await self._write_state(state)
            return True

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            stored = self._table(await self._read_state(), table)
            rows = [copy.deepcopy(row) for row in stored.values() if _matches(row, filters)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by) or ""), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        async with self._lock:
            stored = self._table(await self._read_state(), table)
            return sum(1 for row in stored.values() if _matches(row, filters))


# -----------------------------------------------------------------------------
# In-Memory Gateway
# -----------------------------------------------------------------------------
class InMemoryGateway(DocumentGateway):
    """Process-local gateway. Nothing survives the instance."""

    def __init__(self, seed: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        super().__init__()
        self._state = _empty_state()
        for table, rows in (seed or {}).items():
            target = self._table(self._state, table)
            for row in rows:
                target[row["id"]] = copy.deepcopy(row)

    def _load_state(self) -> Dict[str, Any]:
        return self._state

    def _save_state(self, state: Dict[str, Any]) -> None:
        self._state = state


# -----------------------------------------------------------------------------
# JSON File Gateway
# -----------------------------------------------------------------------------
class JsonFileGateway(DocumentGateway):
    """
    Whole-document JSON persistence.

    Writes go to a sibling .tmp file which then replaces the state file, so a
    crash never leaves a half-written document behind.
    """

    blocking_io = True

    def __init__(self, state_file: Path):
        super().__init__()
        self._state_file = Path(state_file)
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.debug(f"Could not create state directory: {e}")

    def _load_state(self) -> Dict[str, Any]:
        """
        Read the whole document.

        Only a missing file yields an empty document. A file that exists but
        cannot be read or parsed raises StateLoadError and is left untouched.
        """
        if not self._state_file.exists():
            return _empty_state()
        try:
            state = json.loads(self._state_file.read_text())
        except (json.JSONDecodeError, UnicodeDecodeError, IOError) as e:
            logger.error(f"Failed to load state file {self._state_file}: {e}")
            raise StateLoadError(self._state_file, e) from e
        if not isinstance(state, dict) or not isinstance(state.get("tables", {}), dict):
            logger.error(f"State file {self._state_file} does not hold a state document")
            raise StateLoadError(self._state_file, ValueError("not a state document"))
        state.setdefault("tables", {})
        return state

    def _save_state(self, state: Dict[str, Any]) -> None:
        state["last_updated"] = datetime.now(timezone.utc).isoformat()
        temp_file = self._state_file.with_suffix(".tmp")
        try:
            temp_file.write_text(json.dumps(state, indent=2, default=str))
            temp_file.replace(self._state_file)
        except IOError as e:
            logger.error(f"Failed to save state file: {e}")
            if temp_file.exists():
                temp_file.unlink()
            raise
