from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authbase.logging import get_logger
from authbase.storage.errors import ConstraintViolation, StoreUnavailable
from authbase.storage.models import (
    LoginFailure,
    Permission,
    Principal,
    RefreshToken,
    Role,
    SecurityEvent,
    SecurityEventType,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_failed_login_at TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permission (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role_id TEXT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        permission_id TEXT NOT NULL REFERENCES permission(id) ON DELETE CASCADE,
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_role (
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        role_id TEXT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        PRIMARY KEY (principal_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token_hash TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_principal_idx ON refresh_token (principal_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expiry_idx ON refresh_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS security_event (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        principal_id TEXT REFERENCES principal(id) ON DELETE SET NULL,
        description TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        details JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS security_event_principal_idx ON security_event (principal_id, created_at)",
    "CREATE INDEX IF NOT EXISTS security_event_ip_idx ON security_event (ip_address, created_at)",
)


class PostgresStore:
    """Postgres-backed credential, role, refresh-token and audit store.

    Lockout counters are updated with single-statement atomic UPDATEs so
    concurrent failed logins from several app instances never under-count.
    Connectivity failures surface as ``StoreUnavailable``.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self):
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StoreUnavailable("postgres", "connection pool timeout") from exc
        except (errors.OperationalError, errors.QueryCanceled) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("postgres", str(exc)) from exc

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    # -- principals -----------------------------------------------------

    def _load_roles(self, conn, principal_ids: List[str]) -> Dict[str, List[Role]]:
        if not principal_ids:
            return {}
        rows = conn.execute(
            """
            SELECT pr.principal_id, r.id AS role_id, r.name AS role_name, r.description,
                   p.id AS permission_id, p.name AS permission_name
            FROM principal_role pr
            JOIN role r ON r.id = pr.role_id
            LEFT JOIN role_permission rp ON rp.role_id = r.id
            LEFT JOIN permission p ON p.id = rp.permission_id
            WHERE pr.principal_id = ANY(%s)
            ORDER BY r.name, p.name
            """,
            (principal_ids,),
        ).fetchall()
        by_principal: Dict[str, Dict[str, Role]] = {}
        for row in rows:
            roles = by_principal.setdefault(row["principal_id"], {})
            role = roles.get(row["role_id"])
            if role is None:
                role = Role(id=row["role_id"], name=row["role_name"], description=row.get("description"))
                roles[row["role_id"]] = role
            if row.get("permission_id"):
                role.permissions.append(Permission(id=row["permission_id"], name=row["permission_name"]))
        return {pid: list(roles.values()) for pid, roles in by_principal.items()}

    def _principal_from_row(self, row: Dict[str, Any], roles: List[Role]) -> Principal:
        return Principal(
            id=row["id"],
            email=row["email"],
            password_hash=row["password_hash"],
            enabled=row["enabled"],
            email_verified=row["email_verified"],
            roles=roles,
            failed_login_attempts=row["failed_login_attempts"],
            locked_until=row.get("locked_until"),
            last_failed_login_at=row.get("last_failed_login_at"),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
        )

    def _fetch_principal(self, where: str, value: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM principal WHERE {where} = %s", (value,)
            ).fetchone()
            if not row:
                return None
            roles = self._load_roles(conn, [row["id"]])
        return self._principal_from_row(row, roles.get(row["id"], []))

    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        enabled: bool = True,
        email_verified: bool = False,
        roles: Iterable[str] = (),
    ) -> Principal:
        principal_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal (id, email, password_hash, enabled, email_verified)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (principal_id, normalized, password_hash, enabled, email_verified),
                )
                for role_name in roles:
                    self._assign_role(conn, principal_id, role_name)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        principal = self.get_principal(principal_id)
        if principal is None:
            raise StoreUnavailable("postgres", "principal vanished after insert")
        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        return self._fetch_principal("id", principal_id)

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        return self._fetch_principal("email", email.strip().lower())

    def set_principal_enabled(self, principal_id: str, enabled: bool) -> Optional[Principal]:
        with self._connect() as conn:
            conn.execute(
                "UPDATE principal SET enabled = %s WHERE id = %s", (enabled, principal_id)
            )
        return self.get_principal(principal_id)

    def record_failed_login(
        self,
        principal_id: str,
        *,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
    ) -> LoginFailure:
        # Increment, threshold compare and lock-set happen in one statement;
        # the row lock taken by UPDATE serialises concurrent attempts.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal
                SET failed_login_attempts = failed_login_attempts + 1,
                    last_failed_login_at = %(now)s,
                    locked_until = CASE
                        WHEN locked_until IS NULL AND failed_login_attempts + 1 >= %(threshold)s
                        THEN %(lock_until)s
                        ELSE locked_until
                    END
                WHERE id = %(id)s
                RETURNING failed_login_attempts, locked_until,
                          (locked_until IS NOT DISTINCT FROM %(lock_until)s) AS lock_triggered
                """,
                {
                    "id": principal_id,
                    "now": now,
                    "threshold": threshold,
                    "lock_until": now + lock_duration,
                },
            ).fetchone()
        if not row:
            raise KeyError(principal_id)
        return LoginFailure(
            failed_login_attempts=row["failed_login_attempts"],
            locked_until=row["locked_until"],
            lock_triggered=bool(row["lock_triggered"]),
        )

    def clear_expired_lockout(self, principal_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE principal
                SET failed_login_attempts = 0, locked_until = NULL
                WHERE id = %s AND locked_until IS NOT NULL AND locked_until <= %s
                """,
                (principal_id, now),
            )
            return cur.rowcount > 0

    def record_successful_login(self, principal_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE principal
                SET failed_login_attempts = 0, locked_until = NULL, last_login_at = %s
                WHERE id = %s
                """,
                (now, principal_id),
            )

    # -- roles and permissions ------------------------------------------

    def _ensure_permission(self, conn, name: str) -> str:
        row = conn.execute(
            """
            INSERT INTO permission (id, name) VALUES (%s, %s)
            ON CONFLICT (name) DO UPDATE SET name = EXCLUDED.name
            RETURNING id
            """,
            (str(uuid.uuid4()), name),
        ).fetchone()
        return row["id"]

    def create_role(
        self,
        name: str,
        description: Optional[str] = None,
        permissions: Iterable[str] = (),
    ) -> Role:
        role_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO role (id, name, description) VALUES (%s, %s, %s)",
                    (role_id, name, description),
                )
                for perm_name in dict.fromkeys(permissions):
                    perm_id = self._ensure_permission(conn, perm_name)
                    conn.execute(
                        "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                        (role_id, perm_id),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return self.get_role(name)

    def get_role(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.id, r.name, r.description, p.id AS permission_id, p.name AS permission_name
                FROM role r
                LEFT JOIN role_permission rp ON rp.role_id = r.id
                LEFT JOIN permission p ON p.id = rp.permission_id
                WHERE r.name = %s
                ORDER BY p.name
                """,
                (name,),
            ).fetchall()
        if not rows:
            return None
        first = rows[0]
        return Role(
            id=first["id"],
            name=first["name"],
            description=first.get("description"),
            permissions=[
                Permission(id=row["permission_id"], name=row["permission_name"])
                for row in rows
                if row.get("permission_id")
            ],
        )

    def grant_permission(self, role_name: str, permission_name: str) -> Role:
        with self._connect() as conn:
            role = conn.execute("SELECT id FROM role WHERE name = %s", (role_name,)).fetchone()
            if not role:
                raise KeyError(role_name)
            perm_id = self._ensure_permission(conn, permission_name)
            conn.execute(
                "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                (role["id"], perm_id),
            )
        return self.get_role(role_name)

    def _assign_role(self, conn, principal_id: str, role_name: str) -> None:
        row = conn.execute("SELECT id FROM role WHERE name = %s", (role_name,)).fetchone()
        if not row:
            raise ConstraintViolation("role not found", {"field": "role"})
        conn.execute(
            "INSERT INTO principal_role (principal_id, role_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
            (principal_id, row["id"]),
        )

    def assign_role(self, principal_id: str, role_name: str) -> None:
        with self._connect() as conn:
            self._assign_role(conn, principal_id, role_name)

    def revoke_role(self, principal_id: str, role_name: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                DELETE FROM principal_role
                WHERE principal_id = %s AND role_id = (SELECT id FROM role WHERE name = %s)
                """,
                (principal_id, role_name),
            )

    # -- refresh tokens -------------------------------------------------

    def add_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token_hash, principal_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.token_hash, record.principal_id, record.expires_at, record.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        return record

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return RefreshToken(
            token_hash=row["token_hash"],
            principal_id=row["principal_id"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE token_hash = %s", (token_hash,))
            return cur.rowcount > 0

    def delete_refresh_tokens_for_principal(self, principal_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE principal_id = %s", (principal_id,))
            return cur.rowcount

    def delete_refresh_tokens_expired(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at < %s", (before,))
            return cur.rowcount

    def count_active_refresh_tokens(self, principal_id: str, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM refresh_token WHERE principal_id = %s AND expires_at >= %s",
                (principal_id, now),
            ).fetchone()
        return int(row["n"]) if row else 0

    # -- security events ------------------------------------------------

    @staticmethod
    def _event_from_row(row: Dict[str, Any]) -> SecurityEvent:
        details = row.get("details")
        if isinstance(details, str):
            details = json.loads(details)
        return SecurityEvent(
            id=row["id"],
            event_type=SecurityEventType(row["event_type"]),
            principal_id=row.get("principal_id"),
            description=row["description"],
            success=row["success"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            details=details,
            created_at=row["created_at"],
        )

    def add_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_event
                    (id, event_type, principal_id, description, success, ip_address, user_agent, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.event_type.value,
                    event.principal_id,
                    event.description,
                    event.success,
                    event.ip_address,
                    event.user_agent,
                    json.dumps(event.details) if event.details else None,
                    event.created_at,
                ),
            )
        return event

    def list_security_events(
        self,
        *,
        principal_id: Optional[str] = None,
        event_type: Optional[SecurityEventType] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if principal_id is not None:
            clauses.append("principal_id = %s")
            params.append(principal_id)
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(event_type.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM security_event {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [self._event_from_row(row) for row in rows]

    def count_failed_logins(self, principal_id: str, since: datetime, until: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM security_event
                WHERE principal_id = %s AND event_type = %s
                  AND created_at BETWEEN %s AND %s
                """,
                (principal_id, SecurityEventType.LOGIN_FAILURE.value, since, until),
            ).fetchone()
        return int(row["n"]) if row else 0

    def list_failed_logins_from_ip(self, ip_address: str, since: datetime) -> List[SecurityEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM security_event
                WHERE ip_address = %s AND success = FALSE AND created_at >= %s
                ORDER BY created_at DESC
                """,
                (ip_address, since),
            ).fetchall()
        return [self._event_from_row(row) for row in rows]

    def delete_security_events_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM security_event WHERE created_at < %s", (cutoff,))
            return cur.rowcount
