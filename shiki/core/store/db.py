from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from shiki.core import ids
from shiki.core.errors import IdExhausted, InvalidInput, NotFound, StorageFailure, TaskDeleted
from shiki.core.model import (
    AuditEntry,
    AuditOperation,
    DependencyKind,
    Edge,
    Fuda,
    FudaStatus,
)

logger = logging.getLogger(__name__)


# Ordered, named migrations. Each runs once; pending ones share one transaction.
MIGRATIONS: list[tuple[str, tuple[str, ...]]] = [
    (
        "0001_init",
        (
            """
            CREATE TABLE fuda (
                id TEXT PRIMARY KEY,
                prd_id TEXT,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'blocked',
                priority INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted_at TEXT,
                deleted_by TEXT,
                delete_reason TEXT
            )
            """,
            """
            CREATE TABLE fuda_edges (
                from_id TEXT NOT NULL REFERENCES fuda(id),
                to_id TEXT NOT NULL REFERENCES fuda(id),
                kind TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (from_id, to_id, kind)
            )
            """,
            "CREATE INDEX idx_fuda_status ON fuda(status)",
            "CREATE INDEX idx_fuda_prd_id ON fuda(prd_id)",
            "CREATE INDEX idx_fuda_priority ON fuda(priority DESC)",
            "CREATE INDEX idx_edges_to ON fuda_edges(to_id, kind)",
            "CREATE INDEX idx_edges_kind ON fuda_edges(kind)",
        ),
    ),
    (
        "0002_audit_log",
        (
            """
            CREATE TABLE audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                fuda_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                field TEXT,
                old_value TEXT,
                new_value TEXT,
                actor TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
            """,
            "CREATE INDEX idx_audit_fuda_id ON audit_log(fuda_id)",
        ),
    ),
]

_FUDA_COLUMNS = (
    "id, prd_id, title, description, status, priority, "
    "created_at, updated_at, deleted_at, deleted_by, delete_reason"
)
_ORDER = "ORDER BY priority DESC, created_at ASC, rowid ASC"

# Fields a caller may change via update_fields (status has its own path).
UPDATABLE_FIELDS: set[str] = {"title", "description", "priority", "prd_id"}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _corrupt(table: str, key: str, message: str) -> StorageFailure:
    return StorageFailure(
        code="E_CORRUPT_ROW",
        message=f"{table} row {key}: {message}",
        ids=(key,),
    )


def _row_to_fuda(row: sqlite3.Row) -> Fuda:
    try:
        status = FudaStatus(row["status"])
    except ValueError as e:
        raise _corrupt("fuda", row["id"], f"unknown status {row['status']!r}") from e
    return Fuda(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        status=status,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        prd_id=row["prd_id"],
        priority=int(row["priority"]),
        deleted_at=row["deleted_at"],
        deleted_by=row["deleted_by"],
        delete_reason=row["delete_reason"],
    )


def _row_to_edge(row: sqlite3.Row) -> Edge:
    try:
        kind = DependencyKind(row["kind"])
    except ValueError as e:
        key = f"{row['from_id']}->{row['to_id']}"
        raise _corrupt("fuda_edges", key, f"unknown kind {row['kind']!r}") from e
    return Edge(from_id=row["from_id"], to_id=row["to_id"], kind=kind)


def _row_to_audit(row: sqlite3.Row) -> AuditEntry:
    try:
        operation = AuditOperation(row["operation"])
    except ValueError as e:
        raise _corrupt("audit_log", str(row["id"]), f"unknown operation {row['operation']!r}") from e
    return AuditEntry(
        id=int(row["id"]),
        fuda_id=row["fuda_id"],
        operation=operation,
        actor=row["actor"],
        timestamp=row["timestamp"],
        field=row["field"],
        old_value=row["old_value"],
        new_value=row["new_value"],
    )


class Store:
    """Handle to one project's sqlite database.

    Open it per command and close it when the command ends (the store is a
    context manager). Multi-step check-then-write sequences must run inside
    `transaction()`.
    """

    def __init__(
        self,
        path: Path,
        *,
        busy_timeout_ms: int = 5000,
        id_attempts: int = ids.DEFAULT_ATTEMPTS_PER_LENGTH,
    ) -> None:
        self.path = Path(path)
        self.id_attempts = id_attempts
        self._depth = 0
        try:
            # isolation_level=None: transactions are issued explicitly by transaction()
            self.conn = sqlite3.connect(
                str(self.path), timeout=busy_timeout_ms / 1000.0, isolation_level=None
            )
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys=ON")
            self.conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        except sqlite3.Error as e:
            raise StorageFailure(code="E_STORAGE", message=f"cannot open {self.path}: {e}") from e

    @classmethod
    def open(
        cls,
        path: Path,
        *,
        create: bool = False,
        busy_timeout_ms: int = 5000,
        id_attempts: int = ids.DEFAULT_ATTEMPTS_PER_LENGTH,
    ) -> "Store":
        p = Path(path)
        if create:
            p.parent.mkdir(parents=True, exist_ok=True)
        elif not p.exists():
            raise StorageFailure(
                code="E_NOT_INITIALIZED",
                message=f"no database at {p} (run 'shiki init' first)",
            )
        store = cls(p, busy_timeout_ms=busy_timeout_ms, id_attempts=id_attempts)
        try:
            store.migrate()
        except BaseException:
            store.close()
            raise
        return store

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -- transactions -------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Scoped atomic unit.

        The outermost level takes the sqlite write lock up front (BEGIN
        IMMEDIATE) so no other process can interleave between our checks
        and our writes. Nested levels are savepoints. Every exit path
        commits or rolls back; sqlite errors surface as StorageFailure.
        """
        if self._depth == 0:
            begin, commit = "BEGIN IMMEDIATE", "COMMIT"
            rollback: tuple[str, ...] = ("ROLLBACK",)
        else:
            name = f"sp_{self._depth}"
            begin, commit = f"SAVEPOINT {name}", f"RELEASE {name}"
            rollback = (f"ROLLBACK TO {name}", f"RELEASE {name}")

        self._raw(begin)
        self._depth += 1
        logger.debug("transaction begin depth=%d", self._depth)
        try:
            yield self.conn
        except sqlite3.Error as e:
            self._depth -= 1
            self._rollback(rollback)
            raise StorageFailure(code="E_STORAGE", message=str(e)) from e
        except BaseException:
            self._depth -= 1
            self._rollback(rollback)
            raise

        self._depth -= 1
        try:
            self.conn.execute(commit)
        except sqlite3.Error as e:
            self._rollback(rollback)
            raise StorageFailure(code="E_STORAGE", message=f"commit failed: {e}") from e
        logger.debug("transaction commit depth=%d", self._depth + 1)

    def _raw(self, sql: str) -> None:
        try:
            self.conn.execute(sql)
        except sqlite3.Error as e:
            raise StorageFailure(code="E_STORAGE", message=f"{sql}: {e}") from e

    def _rollback(self, statements: tuple[str, ...]) -> None:
        logger.debug("transaction rollback depth=%d", self._depth + 1)
        for sql in statements:
            try:
                self.conn.execute(sql)
            except sqlite3.Error:
                # ROLLBACK after sqlite already aborted the transaction is expected to fail.
                logger.debug("rollback statement failed: %s", sql)

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self.conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise StorageFailure(code="E_STORAGE", message=str(e)) from e

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        try:
            return self.conn.execute(sql, tuple(params)).rowcount
        except sqlite3.Error as e:
            raise StorageFailure(code="E_STORAGE", message=str(e)) from e

    # -- migrations ---------------------------------------------------

    def migrate(self) -> list[str]:
        self._execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                name TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        applied = {r["name"] for r in self._query("SELECT name FROM migrations")}
        pending = [(name, stmts) for name, stmts in MIGRATIONS if name not in applied]
        if not pending:
            return []

        with self.transaction():
            for name, statements in pending:
                for sql in statements:
                    self._execute(sql)
                self._execute(
                    "INSERT INTO migrations (name, applied_at) VALUES (?, ?)", (name, now_iso())
                )
                logger.info("applied migration %s", name)
        return [name for name, _ in pending]

    def migration_status(self) -> list[tuple[str, str]]:
        rows = self._query("SELECT name, applied_at FROM migrations ORDER BY name")
        return [(r["name"], r["applied_at"]) for r in rows]

    # -- fuda ---------------------------------------------------------

    def insert_fuda(
        self,
        *,
        title: str,
        description: str = "",
        prd_id: Optional[str] = None,
        priority: int = 0,
    ) -> Fuda:
        """Insert a new BLOCKED fuda, retrying ids rejected by the primary key."""
        now = now_iso()
        tried: list[str] = []
        for candidate in ids.candidate_ids(self.id_attempts):
            try:
                self.conn.execute(
                    f"""
                    INSERT INTO fuda ({_FUDA_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL)
                    """,
                    (
                        candidate,
                        prd_id,
                        title,
                        description,
                        FudaStatus.BLOCKED.value,
                        priority,
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError:
                tried.append(candidate)
                logger.debug("id collision on %s, retrying", candidate)
                continue
            except sqlite3.Error as e:
                raise StorageFailure(code="E_STORAGE", message=str(e)) from e

            fuda = self.get_fuda(candidate, include_deleted=True)
            assert fuda is not None
            return fuda

        raise IdExhausted(
            code="E_ID_EXHAUSTED",
            message=f"no free id after {len(tried)} attempts",
        )

    def get_fuda(self, fuda_id: str, *, include_deleted: bool = False) -> Optional[Fuda]:
        where = "" if include_deleted else " AND deleted_at IS NULL"
        rows = self._query(f"SELECT {_FUDA_COLUMNS} FROM fuda WHERE id = ?{where}", (fuda_id,))
        return _row_to_fuda(rows[0]) if rows else None

    def require_fuda(self, fuda_id: str, *, allow_deleted: bool = False) -> Fuda:
        """Load a fuda or fail with NotFound / TaskDeleted."""
        fuda = self.get_fuda(fuda_id, include_deleted=True)
        if fuda is None:
            raise NotFound(code="E_NOT_FOUND", message=f"fuda not found: {fuda_id}", ids=(fuda_id,))
        if fuda.is_deleted and not allow_deleted:
            raise TaskDeleted(
                code="E_TASK_DELETED",
                message=f"fuda is deleted: {fuda_id}",
                ids=(fuda_id,),
            )
        return fuda

    def find_by_prefix(self, prefix: str, *, include_deleted: bool = False) -> list[Fuda]:
        where = "" if include_deleted else " AND deleted_at IS NULL"
        exact = self.get_fuda(prefix.strip(), include_deleted=include_deleted)
        if exact is not None:
            return [exact]
        pattern = ids.normalize_prefix(prefix).replace("%", r"\%").replace("_", r"\_") + "%"
        rows = self._query(
            f"SELECT {_FUDA_COLUMNS} FROM fuda WHERE id LIKE ? ESCAPE '\\'{where} {_ORDER}",
            (pattern,),
        )
        return [_row_to_fuda(r) for r in rows]

    def list_fuda(
        self,
        *,
        statuses: Optional[Iterable[FudaStatus]] = None,
        prd_id: Optional[str] = None,
        ids_in: Optional[Iterable[str]] = None,
        include_deleted: bool = False,
        deleted_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[Fuda]:
        clauses: list[str] = []
        params: list[Any] = []
        if deleted_only:
            clauses.append("deleted_at IS NOT NULL")
        elif not include_deleted:
            clauses.append("deleted_at IS NULL")
        if statuses is not None:
            values = [FudaStatus(s).value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if prd_id is not None:
            clauses.append("prd_id = ?")
            params.append(prd_id)
        if ids_in is not None:
            id_list = sorted(set(ids_in))
            if not id_list:
                return []
            clauses.append(f"id IN ({', '.join('?' for _ in id_list)})")
            params.extend(id_list)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {_FUDA_COLUMNS} FROM fuda {where} {_ORDER}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [_row_to_fuda(r) for r in self._query(sql, params)]

    def set_status(self, fuda_id: str, status: FudaStatus) -> None:
        self._execute(
            "UPDATE fuda SET status = ?, updated_at = ? WHERE id = ?",
            (FudaStatus(status).value, now_iso(), fuda_id),
        )

    def update_fields(self, fuda_id: str, fields: dict[str, Any]) -> None:
        unknown = sorted(set(fields) - UPDATABLE_FIELDS)
        if unknown:
            raise InvalidInput(
                code="E_INVALID_FIELD",
                message=f"fields cannot be updated: {unknown}",
                ids=(fuda_id,),
            )
        if not fields:
            return
        names = sorted(fields)
        assignments = ", ".join(f"{name} = ?" for name in names)
        params = [fields[name] for name in names] + [now_iso(), fuda_id]
        self._execute(f"UPDATE fuda SET {assignments}, updated_at = ? WHERE id = ?", params)

    def mark_deleted(
        self, fuda_id: str, *, deleted_by: Optional[str] = None, reason: Optional[str] = None
    ) -> bool:
        now = now_iso()
        changed = self._execute(
            """
            UPDATE fuda
            SET deleted_at = ?, deleted_by = ?, delete_reason = ?, updated_at = ?
            WHERE id = ? AND deleted_at IS NULL
            """,
            (now, deleted_by, reason, now, fuda_id),
        )
        return changed > 0

    def clear_deleted(self, fuda_id: str) -> bool:
        changed = self._execute(
            """
            UPDATE fuda
            SET deleted_at = NULL, deleted_by = NULL, delete_reason = NULL, updated_at = ?
            WHERE id = ? AND deleted_at IS NOT NULL
            """,
            (now_iso(), fuda_id),
        )
        return changed > 0

    def hard_delete(self, fuda_id: str) -> bool:
        self._execute("DELETE FROM fuda_edges WHERE from_id = ? OR to_id = ?", (fuda_id, fuda_id))
        return self._execute("DELETE FROM fuda WHERE id = ?", (fuda_id,)) > 0

    # -- edges --------------------------------------------------------

    def insert_edge(self, edge: Edge) -> None:
        self._execute(
            "INSERT INTO fuda_edges (from_id, to_id, kind, created_at) VALUES (?, ?, ?, ?)",
            (edge.from_id, edge.to_id, edge.kind.value, now_iso()),
        )

    def delete_edge(self, edge: Edge) -> bool:
        changed = self._execute(
            "DELETE FROM fuda_edges WHERE from_id = ? AND to_id = ? AND kind = ?",
            (edge.from_id, edge.to_id, edge.kind.value),
        )
        return changed > 0

    def edge_exists(self, edge: Edge) -> bool:
        rows = self._query(
            "SELECT 1 FROM fuda_edges WHERE from_id = ? AND to_id = ? AND kind = ?",
            (edge.from_id, edge.to_id, edge.kind.value),
        )
        return bool(rows)

    def edges(
        self,
        *,
        kind: Optional[DependencyKind] = None,
        from_id: Optional[str] = None,
        to_id: Optional[str] = None,
        live_only: bool = False,
    ) -> list[Edge]:
        """Edges matching the filters; live_only drops edges touching soft-deleted fuda."""
        clauses: list[str] = []
        params: list[Any] = []
        if kind is not None:
            clauses.append("e.kind = ?")
            params.append(DependencyKind(kind).value)
        if from_id is not None:
            clauses.append("e.from_id = ?")
            params.append(from_id)
        if to_id is not None:
            clauses.append("e.to_id = ?")
            params.append(to_id)
        join = ""
        if live_only:
            join = (
                "JOIN fuda f ON f.id = e.from_id AND f.deleted_at IS NULL "
                "JOIN fuda t ON t.id = e.to_id AND t.deleted_at IS NULL"
            )
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._query(
            f"""
            SELECT e.from_id, e.to_id, e.kind FROM fuda_edges e {join} {where}
            ORDER BY e.from_id, e.to_id, e.kind
            """,
            params,
        )
        return [_row_to_edge(r) for r in rows]

    def edges_touching(self, fuda_id: str) -> list[Edge]:
        rows = self._query(
            """
            SELECT from_id, to_id, kind FROM fuda_edges
            WHERE from_id = ? OR to_id = ?
            ORDER BY from_id, to_id, kind
            """,
            (fuda_id, fuda_id),
        )
        return [_row_to_edge(r) for r in rows]

    # -- aggregates ---------------------------------------------------

    def status_rows(self, *, prd_id: Optional[str] = None) -> list[tuple[Optional[str], FudaStatus, int]]:
        """(prd_id, status, count) over non-deleted fuda."""
        where = "WHERE deleted_at IS NULL"
        params: list[Any] = []
        if prd_id is not None:
            where += " AND prd_id = ?"
            params.append(prd_id)
        rows = self._query(
            f"""
            SELECT prd_id, status, COUNT(*) AS count FROM fuda {where}
            GROUP BY prd_id, status
            """,
            params,
        )
        out: list[tuple[Optional[str], FudaStatus, int]] = []
        for r in rows:
            try:
                status = FudaStatus(r["status"])
            except ValueError as e:
                raise _corrupt("fuda", str(r["prd_id"]), f"unknown status {r['status']!r}") from e
            out.append((r["prd_id"], status, int(r["count"])))
        return out

    def prd_reference_counts(self) -> list[tuple[str, int]]:
        rows = self._query(
            """
            SELECT prd_id, COUNT(*) AS count FROM fuda
            WHERE prd_id IS NOT NULL AND deleted_at IS NULL
            GROUP BY prd_id
            ORDER BY prd_id
            """
        )
        return [(r["prd_id"], int(r["count"])) for r in rows]

    # -- audit --------------------------------------------------------

    def append_audit(
        self,
        *,
        fuda_id: str,
        operation: AuditOperation,
        actor: str,
        field: Optional[str] = None,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
    ) -> None:
        self._execute(
            """
            INSERT INTO audit_log (fuda_id, operation, field, old_value, new_value, actor, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (fuda_id, operation.value, field, old_value, new_value, actor, now_iso()),
        )

    def audit_entries(self, fuda_id: str, *, limit: Optional[int] = None) -> list[AuditEntry]:
        sql = "SELECT * FROM audit_log WHERE fuda_id = ? ORDER BY id DESC"
        params: list[Any] = [fuda_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [_row_to_audit(r) for r in self._query(sql, params)]
