"""
Version Repository
Storage for branches and versions: append versions, read history, swap tips.

Two backends share one interface so the version service never knows which
one it runs on: an in-memory registry (default, tests) and SQLite (durable).
"""
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from workflow_vcs.core.config import settings
from workflow_vcs.core.errors import ValidationError
from workflow_vcs.core.logging import store_logger as logger
from workflow_vcs.models.schemas import WorkflowBranch, WorkflowVersion


class VersionRepository(ABC):
    """Persistence contract. Returned objects are copies; mutating them changes nothing."""

    @abstractmethod
    def add_branch(self, branch: WorkflowBranch, initial_version: WorkflowVersion) -> None:
        """Store a new branch together with its first (active) version."""

    @abstractmethod
    def save_branch(self, branch: WorkflowBranch) -> None:
        """Overwrite branch bookkeeping (status, last_modified, change_count)."""

    @abstractmethod
    def get_branch(self, branch_id: str) -> Optional[WorkflowBranch]:
        ...

    @abstractmethod
    def find_branch(self, workflow_id: str, name: str) -> Optional[WorkflowBranch]:
        ...

    @abstractmethod
    def list_branches(self, workflow_id: str) -> List[WorkflowBranch]:
        """Branches of a workflow in creation order."""

    @abstractmethod
    def commit(self, version: WorkflowVersion, branch: Optional[WorkflowBranch] = None) -> WorkflowVersion:
        """
        Append a version and make it the tip of its branch in one step.
        The previous tip is deactivated; `branch`, when given, is saved alongside.
        """

    @abstractmethod
    def get_version(self, version_id: str) -> Optional[WorkflowVersion]:
        ...

    @abstractmethod
    def get_tip(self, branch_id: str) -> Optional[WorkflowVersion]:
        ...

    @abstractmethod
    def list_versions(self, workflow_id: str, branch_id: Optional[str] = None) -> List[WorkflowVersion]:
        """Versions in insertion order."""


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================
class InMemoryVersionRepository(VersionRepository):
    """Process-wide dictionaries guarded by one lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self._branches: Dict[str, WorkflowBranch] = {}
        self._versions: Dict[str, WorkflowVersion] = {}
        self._order: List[str] = []
        self._tips: Dict[str, str] = {}

    def add_branch(self, branch: WorkflowBranch, initial_version: WorkflowVersion) -> None:
        with self._lock:
            if self._find(branch.workflow_id, branch.name) is not None:
                raise ValidationError(f"Branch '{branch.name}' already exists")
            self._branches[branch.id] = branch.model_copy(deep=True)
            self._append(initial_version)

    def save_branch(self, branch: WorkflowBranch) -> None:
        with self._lock:
            self._branches[branch.id] = branch.model_copy(deep=True)

    def get_branch(self, branch_id: str) -> Optional[WorkflowBranch]:
        with self._lock:
            branch = self._branches.get(branch_id)
            return branch.model_copy(deep=True) if branch else None

    def find_branch(self, workflow_id: str, name: str) -> Optional[WorkflowBranch]:
        with self._lock:
            branch = self._find(workflow_id, name)
            return branch.model_copy(deep=True) if branch else None

    def list_branches(self, workflow_id: str) -> List[WorkflowBranch]:
        with self._lock:
            return [
                b.model_copy(deep=True) for b in self._branches.values()
                if b.workflow_id == workflow_id
            ]

    def commit(self, version: WorkflowVersion, branch: Optional[WorkflowBranch] = None) -> WorkflowVersion:
        with self._lock:
            stored = self._append(version)
            if branch is not None:
                self._branches[branch.id] = branch.model_copy(deep=True)
            return stored.model_copy(deep=True)

    def get_version(self, version_id: str) -> Optional[WorkflowVersion]:
        with self._lock:
            version = self._versions.get(version_id)
            return self._view(version) if version else None

    def get_tip(self, branch_id: str) -> Optional[WorkflowVersion]:
        with self._lock:
            tip_id = self._tips.get(branch_id)
            return self._view(self._versions[tip_id]) if tip_id else None

    def list_versions(self, workflow_id: str, branch_id: Optional[str] = None) -> List[WorkflowVersion]:
        with self._lock:
            return [
                self._view(self._versions[version_id]) for version_id in self._order
                if self._versions[version_id].workflow_id == workflow_id
                and (branch_id is None or self._versions[version_id].branch_id == branch_id)
            ]

    def _find(self, workflow_id: str, name: str) -> Optional[WorkflowBranch]:
        for branch in self._branches.values():
            if branch.workflow_id == workflow_id and branch.name == name:
                return branch
        return None

    def _append(self, version: WorkflowVersion) -> WorkflowVersion:
        stored = version.model_copy(deep=True, update={"is_active": True})
        self._versions[stored.id] = stored
        self._order.append(stored.id)
        self._tips[stored.branch_id] = stored.id
        return stored

    def _view(self, version: WorkflowVersion) -> WorkflowVersion:
        # is_active is derived from the tip pointer, so superseded versions never need rewriting
        is_active = self._tips.get(version.branch_id) == version.id
        return version.model_copy(deep=True, update={"is_active": is_active})


# =============================================================================
# SQLITE BACKEND
# =============================================================================
SCHEMA = """
CREATE TABLE IF NOT EXISTS branches (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    name TEXT NOT NULL,
    seq INTEGER NOT NULL,
    data TEXT NOT NULL,
    UNIQUE (workflow_id, name)
);
CREATE TABLE IF NOT EXISTS versions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    workflow_id TEXT NOT NULL,
    branch_id TEXT NOT NULL,
    version_number INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_versions_workflow ON versions (workflow_id, branch_id);
"""


class SqliteVersionRepository(VersionRepository):
    """Durable backend. Each call opens its own connection; writes run in one transaction."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)
        logger.info(f"SQLite version store ready at {db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _run(self, work):
        conn = self._connect()
        try:
            with conn:
                return work(conn)
        finally:
            conn.close()

    def add_branch(self, branch: WorkflowBranch, initial_version: WorkflowVersion) -> None:
        def work(conn):
            try:
                conn.execute(
                    "INSERT INTO branches (id, workflow_id, name, seq, data) "
                    "VALUES (?, ?, ?, (SELECT COUNT(*) FROM branches), ?)",
                    (branch.id, branch.workflow_id, branch.name, branch.model_dump_json())
                )
            except sqlite3.IntegrityError:
                raise ValidationError(f"Branch '{branch.name}' already exists")
            self._insert_version(conn, initial_version)
        self._run(work)

    def save_branch(self, branch: WorkflowBranch) -> None:
        self._run(lambda conn: conn.execute(
            "UPDATE branches SET data = ? WHERE id = ?",
            (branch.model_dump_json(), branch.id)
        ))

    def get_branch(self, branch_id: str) -> Optional[WorkflowBranch]:
        row = self._run(lambda conn: conn.execute(
            "SELECT data FROM branches WHERE id = ?", (branch_id,)
        ).fetchone())
        return WorkflowBranch.model_validate_json(row["data"]) if row else None

    def find_branch(self, workflow_id: str, name: str) -> Optional[WorkflowBranch]:
        row = self._run(lambda conn: conn.execute(
            "SELECT data FROM branches WHERE workflow_id = ? AND name = ?", (workflow_id, name)
        ).fetchone())
        return WorkflowBranch.model_validate_json(row["data"]) if row else None

    def list_branches(self, workflow_id: str) -> List[WorkflowBranch]:
        rows = self._run(lambda conn: conn.execute(
            "SELECT data FROM branches WHERE workflow_id = ? ORDER BY seq", (workflow_id,)
        ).fetchall())
        return [WorkflowBranch.model_validate_json(row["data"]) for row in rows]

    def commit(self, version: WorkflowVersion, branch: Optional[WorkflowBranch] = None) -> WorkflowVersion:
        def work(conn):
            self._insert_version(conn, version)
            if branch is not None:
                conn.execute(
                    "UPDATE branches SET data = ? WHERE id = ?",
                    (branch.model_dump_json(), branch.id)
                )
        self._run(work)
        return version.model_copy(deep=True, update={"is_active": True})

    def get_version(self, version_id: str) -> Optional[WorkflowVersion]:
        row = self._run(lambda conn: conn.execute(
            "SELECT data, is_active FROM versions WHERE id = ?", (version_id,)
        ).fetchone())
        return self._row_to_version(row) if row else None

    def get_tip(self, branch_id: str) -> Optional[WorkflowVersion]:
        row = self._run(lambda conn: conn.execute(
            "SELECT data, is_active FROM versions WHERE branch_id = ? AND is_active = 1", (branch_id,)
        ).fetchone())
        return self._row_to_version(row) if row else None

    def list_versions(self, workflow_id: str, branch_id: Optional[str] = None) -> List[WorkflowVersion]:
        query = "SELECT data, is_active FROM versions WHERE workflow_id = ?"
        params = [workflow_id]
        if branch_id is not None:
            query += " AND branch_id = ?"
            params.append(branch_id)
        rows = self._run(lambda conn: conn.execute(query + " ORDER BY seq", params).fetchall())
        return [self._row_to_version(row) for row in rows]

    @staticmethod
    def _insert_version(conn: sqlite3.Connection, version: WorkflowVersion) -> None:
        conn.execute(
            "UPDATE versions SET is_active = 0 WHERE branch_id = ? AND is_active = 1",
            (version.branch_id,)
        )
        conn.execute(
            "INSERT INTO versions (id, workflow_id, branch_id, version_number, is_active, data) "
            "VALUES (?, ?, ?, ?, 1, ?)",
            (version.id, version.workflow_id, version.branch_id, version.version_number,
             version.model_dump_json())
        )

    @staticmethod
    def _row_to_version(row: sqlite3.Row) -> WorkflowVersion:
        version = WorkflowVersion.model_validate_json(row["data"])
        return version.model_copy(update={"is_active": bool(row["is_active"])})


def build_repository() -> VersionRepository:
    """Pick the backend named by VCS_STORE_BACKEND."""
    if settings.store_backend == "sqlite":
        return SqliteVersionRepository(settings.sqlite_path)
    return InMemoryVersionRepository()
