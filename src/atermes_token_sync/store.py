from __future__ import annotations

import logging
import shutil
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import normalize_tenant
from .errors import PersistenceError
from .models import Credential, TenantBinding


logger = logging.getLogger(__name__)


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


class CredentialStore:
    """
    SQLite store for Atermes credentials, the tenant environments that use them, and run history.

    The store is handed to the sync service explicitly; nothing else holds a global DB handle.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")

        self._conn = self._open_or_restore()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._ensure_schema()

        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "CredentialStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the credential DB, recovering from a damaged file.

        Losing this file means re-entering every password and TOTP seed by hand, so a damaged DB is
        moved aside (never deleted) and the snapshot taken after the last clean run is put back.
        JWTs stored after that snapshot are gone, but the next run captures fresh ones anyway.
        """
        if not self.db_path.exists():
            return sqlite3.connect(self.db_path)

        conn = self._connect_checked(self.db_path)
        if conn is not None:
            return conn

        moved = self._quarantine_db_files()
        logger.warning(
            "Credential DB %s failed its integrity check; moved aside to %s. "
            "The quarantined copy still holds passwords and TOTP seeds: delete it once inspected.",
            self.db_path,
            ", ".join(str(p) for p in moved) or "<nothing>",
        )
        restored = self._restore_from_backup()
        if restored is not None:
            return restored
        logger.warning("Starting with an empty credential DB; re-add credentials and environments.")
        return sqlite3.connect(self.db_path)

    def _restore_from_backup(self) -> Optional[sqlite3.Connection]:
        if not self._backup_path.exists():
            logger.warning("No credential DB snapshot at %s to restore from.", self._backup_path)
            return None
        try:
            shutil.copy2(self._backup_path, self.db_path)
        except OSError:
            logger.warning("Could not copy credential DB snapshot %s.", self._backup_path, exc_info=True)
            return None

        conn = self._connect_checked(self.db_path)
        if conn is None:
            logger.warning("Credential DB snapshot %s is damaged too.", self._backup_path)
            self.db_path.unlink(missing_ok=True)
            return None

        n_creds, n_envs = self._count_rows(conn)
        logger.warning(
            "Restored %d credentials and %d environments from the last clean-run snapshot %s; "
            "JWTs captured since then will be refreshed on the next run.",
            n_creds,
            n_envs,
            self._backup_path,
        )
        return conn

    @staticmethod
    def _connect_checked(path: Path) -> Optional[sqlite3.Connection]:
        """
        Connect and run `PRAGMA quick_check`. Returns None (connection closed) if the file is not a usable DB.
        """
        try:
            conn = sqlite3.connect(path)
        except sqlite3.DatabaseError:
            return None
        try:
            row = conn.execute("PRAGMA quick_check;").fetchone()
            if row and row[0] == "ok":
                return conn
        except sqlite3.DatabaseError:
            logger.debug("quick_check raised for %s.", path, exc_info=True)
        conn.close()
        return None

    @staticmethod
    def _count_rows(conn: sqlite3.Connection) -> tuple[int, int]:
        counts = []
        for table in ("credentials", "environments"):
            try:
                counts.append(int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]))
            except sqlite3.DatabaseError:
                # Snapshot predates the table.
                counts.append(0)
        return counts[0], counts[1]

    def _quarantine_db_files(self) -> list[Path]:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        moved: list[Path] = []
        for suffix in ("", "-wal", "-shm"):
            src = self.db_path.with_name(self.db_path.name + suffix)
            if not src.exists():
                continue
            dst = src.with_name(f"{src.name}.corrupt-{stamp}")
            try:
                src.replace(dst)
            except OSError:
                logger.debug("Could not move aside %s.", src, exc_info=True)
                continue
            moved.append(dst)
        return moved

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return
        try:
            self.backup()
        except (OSError, sqlite3.Error):
            logger.debug("Could not snapshot credential DB to %s.", self._backup_path, exc_info=True)

    def backup(self) -> None:
        """
        Snapshot the credentials, environments and run history to `<db_path>.bak`.

        Written to a temp file and swapped in; a crash mid-write leaves the previous snapshot intact.
        """
        out = self._backup_path
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        dst = sqlite3.connect(tmp)
        try:
            self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credentials (
              id TEXT PRIMARY KEY,
              email TEXT NOT NULL,
              password TEXT NOT NULL,
              two_factor_key TEXT NOT NULL,
              jwt TEXT,
              jwt_set TEXT
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS environments (
              id TEXT PRIMARY KEY,
              tenant TEXT NOT NULL,
              credentials_id TEXT NOT NULL REFERENCES credentials(id) ON UPDATE CASCADE,
              invite_creation_type TEXT,
              enabled INTEGER NOT NULL DEFAULT 1
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              started_at TEXT NOT NULL,
              finished_at TEXT,
              ok INTEGER,
              message TEXT
            );
            """
        )
        self._conn.commit()

    def add_credential(self, *, email: str, password: str, totp_seed: str, credential_id: str = "") -> str:
        cid = credential_id or str(uuid.uuid4())
        self._conn.execute(
            "INSERT INTO credentials(id, email, password, two_factor_key) VALUES (?, ?, ?, ?);",
            (cid, email.strip(), password, totp_seed),
        )
        self._conn.commit()
        return cid

    def add_environment(
        self,
        *,
        tenant: str,
        credential_id: str,
        enabled: bool = True,
        invite_creation_type: str = "",
    ) -> str:
        if self.get_credential(credential_id) is None:
            raise PersistenceError(f"Unknown credential id: {credential_id}")
        eid = str(uuid.uuid4())
        self._conn.execute(
            """
            INSERT INTO environments(id, tenant, credentials_id, invite_creation_type, enabled)
            VALUES (?, ?, ?, ?, ?);
            """,
            (eid, normalize_tenant(tenant), credential_id, invite_creation_type or None, 1 if enabled else 0),
        )
        self._conn.commit()
        return eid

    def set_environment_enabled(self, tenant: str, *, enabled: bool) -> int:
        cur = self._conn.execute(
            "UPDATE environments SET enabled = ? WHERE tenant = ?;",
            (1 if enabled else 0, normalize_tenant(tenant)),
        )
        self._conn.commit()
        return int(cur.rowcount)

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        row = self._conn.execute(
            "SELECT id, email, password, two_factor_key, jwt, jwt_set FROM credentials WHERE id = ?;",
            (credential_id,),
        ).fetchone()
        return self._row_to_credential(row) if row else None

    def _row_to_credential(self, row: tuple) -> Credential:
        return Credential(
            id=row[0],
            email=row[1],
            password=row[2],
            totp_seed=row[3],
            last_token=row[4],
            last_token_set_at=_parse_ts(row[5]),
        )

    def list_environments(self) -> list[TenantBinding]:
        return self._bindings(enabled_only=False)

    def list_enabled_bindings(self) -> list[TenantBinding]:
        """
        Enabled environments joined with their credential, ordered by tenant name.
        """
        return self._bindings(enabled_only=True)

    def _bindings(self, *, enabled_only: bool) -> list[TenantBinding]:
        sql = """
            SELECT e.tenant, e.enabled, c.id, c.email, c.password, c.two_factor_key, c.jwt, c.jwt_set
            FROM environments e
            JOIN credentials c ON c.id = e.credentials_id
        """
        if enabled_only:
            sql += " WHERE e.enabled = 1"
        sql += " ORDER BY e.tenant ASC, e.id ASC;"

        out: list[TenantBinding] = []
        for row in self._conn.execute(sql).fetchall():
            cred = self._row_to_credential(row[2:])
            out.append(TenantBinding(tenant=row[0], credential_id=cred.id, enabled=bool(row[1]), credential=cred))
        return out

    def update_token(self, credential_id: str, token: str, timestamp: Optional[datetime] = None) -> None:
        when = (timestamp or datetime.now(timezone.utc)).isoformat()
        try:
            cur = self._conn.execute(
                "UPDATE credentials SET jwt = ?, jwt_set = ? WHERE id = ?;",
                (token, when, credential_id),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed storing token for credential {credential_id}: {e}") from e
        if cur.rowcount == 0:
            raise PersistenceError(f"Failed storing token: unknown credential {credential_id}")

    def get_token_for_tenant(self, tenant: str) -> Optional[str]:
        row = self._conn.execute(
            """
            SELECT c.jwt FROM environments e
            JOIN credentials c ON c.id = e.credentials_id
            WHERE e.tenant = ? AND c.jwt IS NOT NULL
            ORDER BY c.jwt_set DESC LIMIT 1;
            """,
            (normalize_tenant(tenant),),
        ).fetchone()
        return row[0] if row else None

    def record_run_start(self) -> int:
        now = datetime.now(timezone.utc).isoformat()
        cur = self._conn.execute("INSERT INTO runs(started_at) VALUES (?);", (now,))
        self._conn.commit()
        return int(cur.lastrowid)

    def record_run_finish(self, run_id: int, *, ok: bool, message: Optional[str] = None) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            "UPDATE runs SET finished_at = ?, ok = ?, message = ? WHERE id = ?;",
            (now, 1 if ok else 0, message, run_id),
        )
        self._conn.commit()

        # Only snapshot after a clean run so the backup stays last-known-good.
        if ok:
            self._maybe_backup(if_missing=False)

    def last_run(self) -> Optional[tuple[int, Optional[bool], Optional[str]]]:
        row = self._conn.execute("SELECT id, ok, message FROM runs ORDER BY id DESC LIMIT 1;").fetchone()
        if not row:
            return None
        return int(row[0]), (None if row[1] is None else bool(row[1])), row[2]
