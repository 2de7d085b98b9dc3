from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from blockgate.logging import get_logger
from blockgate.storage.errors import ConstraintViolation
from blockgate.storage.models import (
    ExecutionRecord,
    IdentityLink,
    NewAccount,
    ServiceCredential,
    User,
    Workflow,
    Workspace,
    utcnow,
)

_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS service_api_key (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        key_hash TEXT NOT NULL UNIQUE,
        key_prefix TEXT NOT NULL,
        service_name TEXT NOT NULL,
        permissions JSONB NOT NULL DEFAULT '[]'::jsonb,
        rate_limit_per_minute INTEGER,
        rate_limit_per_day INTEGER,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ,
        created_by_user_id TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    "CREATE INDEX IF NOT EXISTS service_api_key_service_idx ON service_api_key (service_name)",
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_stats (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL UNIQUE REFERENCES app_user(id) ON DELETE CASCADE,
        current_usage_limit TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS identity_link (
        id TEXT PRIMARY KEY,
        external_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, external_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workspace (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        owner_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workspace_permission (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        workspace_id TEXT NOT NULL REFERENCES workspace(id) ON DELETE CASCADE,
        permission_type TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        workspace_id TEXT NOT NULL REFERENCES workspace(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        color TEXT NOT NULL,
        state JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS block_execution_log (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL UNIQUE,
        workflow_id TEXT,
        block_type TEXT NOT NULL,
        block_version TEXT,
        caller_id TEXT,
        caller_user_id TEXT,
        caller_workspace_id TEXT,
        caller_workflow_id TEXT,
        caller_node_id TEXT,
        level TEXT NOT NULL,
        trigger TEXT NOT NULL,
        started_at TIMESTAMPTZ NOT NULL,
        ended_at TIMESTAMPTZ,
        total_duration_ms INTEGER,
        execution_data JSONB NOT NULL DEFAULT '{}'::jsonb,
        api_calls_made INTEGER NOT NULL DEFAULT 0,
        credits_consumed DOUBLE PRECISION NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS block_execution_log_caller_user_idx ON block_execution_log (caller_user_id)",
]


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


class PostgresStore:
    """Postgres-backed store for credentials, identity links, accounts and the execution log."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # row mappers
    @staticmethod
    def _credential_from_row(row: Dict[str, Any]) -> ServiceCredential:
        permissions = _load_json(row.get("permissions"), [])
        # Older rows stored the scope list as a JSON encoded string
        if isinstance(permissions, str):
            permissions = _load_json(permissions, [])
        return ServiceCredential(
            id=str(row["id"]),
            name=row["name"],
            key_hash=row["key_hash"],
            key_prefix=row["key_prefix"],
            service_name=row["service_name"],
            scopes=[str(p) for p in permissions] if isinstance(permissions, list) else [],
            rate_limit_per_minute=row.get("rate_limit_per_minute"),
            rate_limit_per_day=row.get("rate_limit_per_day"),
            is_active=row.get("is_active", True),
            expires_at=row.get("expires_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            last_used_at=row.get("last_used_at"),
            created_by_user_id=row.get("created_by_user_id"),
            metadata=_load_json(row.get("metadata"), {}),
        )

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            email_verified=row.get("email_verified", False),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _link_from_row(row: Dict[str, Any]) -> IdentityLink:
        return IdentityLink(
            id=str(row["id"]),
            external_id=row["external_id"],
            provider=row["provider"],
            user_id=str(row["user_id"]),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            metadata=_load_json(row.get("metadata"), {}),
        )

    @staticmethod
    def _execution_from_row(row: Dict[str, Any]) -> ExecutionRecord:
        return ExecutionRecord(
            id=str(row["id"]),
            execution_id=row["execution_id"],
            workflow_id=row.get("workflow_id"),
            block_type=row["block_type"],
            block_version=row.get("block_version"),
            caller_id=row.get("caller_id"),
            caller_user_id=row.get("caller_user_id"),
            caller_workspace_id=row.get("caller_workspace_id"),
            caller_workflow_id=row.get("caller_workflow_id"),
            caller_node_id=row.get("caller_node_id"),
            level=row.get("level", "info"),
            trigger=row.get("trigger", "api"),
            started_at=row["started_at"],
            ended_at=row.get("ended_at"),
            total_duration_ms=row.get("total_duration_ms"),
            execution_data=_load_json(row.get("execution_data"), {}),
            api_calls_made=row.get("api_calls_made") or 0,
            credits_consumed=float(row.get("credits_consumed") or 0),
        )

    # service credentials
    def create_service_credential(self, credential: ServiceCredential) -> ServiceCredential:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO service_api_key (
                        id, name, key_hash, key_prefix, service_name, permissions,
                        rate_limit_per_minute, rate_limit_per_day, is_active, expires_at,
                        created_at, updated_at, created_by_user_id, metadata
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        credential.id,
                        credential.name,
                        credential.key_hash,
                        credential.key_prefix,
                        credential.service_name,
                        json.dumps(credential.scopes),
                        credential.rate_limit_per_minute,
                        credential.rate_limit_per_day,
                        credential.is_active,
                        credential.expires_at,
                        credential.created_at,
                        credential.updated_at,
                        credential.created_by_user_id,
                        json.dumps(credential.metadata),
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("service key already exists", {"field": "key_hash"})
        return credential

    def get_service_credential_by_hash(
        self, key_hash: str, service_name: str
    ) -> Optional[ServiceCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM service_api_key WHERE key_hash = %s AND service_name = %s LIMIT 1",
                (key_hash, service_name),
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def touch_service_credential(self, credential_id: str, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE service_api_key SET last_used_at = %s WHERE id = %s",
                (when or utcnow(), credential_id),
            )

    # users and identity links
    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s) LIMIT 1",
                (email.strip(),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_identity_link(self, provider: str, external_id: str) -> Optional[IdentityLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity_link WHERE provider = %s AND external_id = %s LIMIT 1",
                (provider, external_id),
            ).fetchone()
        return self._link_from_row(row) if row else None

    def create_identity_link(self, link: IdentityLink) -> IdentityLink:
        try:
            with self._connect() as conn:
                self._insert_link(conn, link)
        except errors.UniqueViolation:
            raise ConstraintViolation("identity link already exists", {"field": "external_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        return link

    @staticmethod
    def _insert_link(conn, link: IdentityLink) -> None:
        conn.execute(
            """
            INSERT INTO identity_link (id, external_id, provider, user_id, metadata, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                link.id,
                link.external_id,
                link.provider,
                link.user_id,
                json.dumps(link.metadata),
                link.created_at,
                link.updated_at,
            ),
        )

    def create_account(self, account: NewAccount) -> NewAccount:
        user = account.user
        workspace = account.workspace
        workflow = account.workflow
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, email_verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (user.id, user.email, user.name, user.email_verified, user.created_at, user.updated_at),
                )
                conn.execute(
                    "INSERT INTO user_stats (id, user_id, current_usage_limit, created_at) VALUES (%s, %s, %s, %s)",
                    (
                        account.usage_limit.id,
                        account.usage_limit.user_id,
                        account.usage_limit.current_usage_limit,
                        account.usage_limit.created_at,
                    ),
                )
                self._insert_link(conn, account.link)
                conn.execute(
                    "INSERT INTO workspace (id, name, owner_id, created_at, updated_at) VALUES (%s, %s, %s, %s, %s)",
                    (workspace.id, workspace.name, workspace.owner_id, workspace.created_at, workspace.updated_at),
                )
                conn.execute(
                    """
                    INSERT INTO workspace_permission (id, user_id, workspace_id, permission_type, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        account.permission.id,
                        account.permission.user_id,
                        account.permission.workspace_id,
                        account.permission.permission_type,
                        account.permission.created_at,
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO workflow (id, user_id, workspace_id, name, description, color, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        workflow.id,
                        workflow.user_id,
                        workflow.workspace_id,
                        workflow.name,
                        workflow.description,
                        workflow.color,
                        workflow.created_at,
                        workflow.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
            raise ConstraintViolation(
                "unique constraint violated during account creation",
                {"constraint": constraint},
            )
        return account

    def get_owned_workspace(self, user_id: str) -> Optional[Workspace]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace WHERE owner_id = %s ORDER BY created_at ASC LIMIT 1",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return Workspace(
            id=str(row["id"]),
            name=row["name"],
            owner_id=str(row["owner_id"]),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM workflow WHERE id = %s", (workflow_id,)).fetchone()
        if not row:
            return None
        return Workflow(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            workspace_id=str(row["workspace_id"]),
            name=row["name"],
            description=row.get("description") or "",
            color=row["color"],
            state=_load_json(row.get("state"), None),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def seed_workflow_state(self, workflow_id: str, state: Dict[str, Any]) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE workflow SET state = %s, updated_at = now() WHERE id = %s",
                (json.dumps(state), workflow_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("workflow does not exist", {"field": "workflow_id"})

    # execution log
    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM block_execution_log WHERE execution_id = %s LIMIT 1",
                (execution_id,),
            ).fetchone()
        return self._execution_from_row(row) if row else None

    def insert_execution(self, record: ExecutionRecord) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                INSERT INTO block_execution_log (
                    id, execution_id, workflow_id, block_type, block_version, caller_id,
                    caller_user_id, caller_workspace_id, caller_workflow_id, caller_node_id,
                    level, trigger, started_at, execution_data
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (execution_id) DO NOTHING
                """,
                (
                    record.id,
                    record.execution_id,
                    record.workflow_id,
                    record.block_type,
                    record.block_version,
                    record.caller_id,
                    record.caller_user_id,
                    record.caller_workspace_id,
                    record.caller_workflow_id,
                    record.caller_node_id,
                    record.level,
                    record.trigger,
                    record.started_at,
                    json.dumps(record.execution_data),
                ),
            )
            return result.rowcount == 1

    def update_execution_progress(self, execution_id: str, execution_data: Dict[str, Any]) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE block_execution_log SET execution_data = %s
                WHERE execution_id = %s AND ended_at IS NULL
                """,
                (json.dumps(execution_data), execution_id),
            )
            return result.rowcount == 1

    def complete_execution(
        self,
        execution_id: str,
        *,
        level: str,
        ended_at: datetime,
        total_duration_ms: int,
        execution_data: Dict[str, Any],
        api_calls_made: int = 0,
        credits_consumed: float = 0.0,
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE block_execution_log
                SET level = %s, ended_at = %s, total_duration_ms = %s, execution_data = %s,
                    api_calls_made = %s, credits_consumed = %s
                WHERE execution_id = %s AND ended_at IS NULL
                """,
                (
                    level,
                    ended_at,
                    total_duration_ms,
                    json.dumps(execution_data),
                    api_calls_made,
                    credits_consumed,
                    execution_id,
                ),
            )
            return result.rowcount == 1

    def close(self) -> None:
        self.pool.close()
