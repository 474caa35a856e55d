"""Tenant databases: a database + role on a shared PostgreSQL host, or a dedicated RDS instance."""

from __future__ import annotations

from contextlib import contextmanager
import logging
import re
from typing import Callable, ContextManager, Iterator

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from stratus.backends.aws import adapter_error, client_for, error_code
from stratus.backends.base import (
    AdapterError,
    DatabaseCredentials,
    DedicatedDatabaseSpec,
    DeleteOutcome,
    PollStatus,
    PoolPlacement,
    ResourceHandle,
    classify_error,
)
from stratus.config import Settings
from stratus.services.constants import RESOURCE_DEDICATED_DATABASE, RESOURCE_SHARED_DATABASE
from stratus.services.naming import is_safe_sql_identifier

logger = logging.getLogger(__name__)

ConnectFn = Callable[[str], ContextManager[Connection]]

POSTGRES_PORT = 5432
_RDS_READY_STATES = frozenset({"available"})
_RDS_FAILED_STATES = frozenset(
    {"failed", "incompatible-parameters", "incompatible-restore", "inaccessible-encryption-credentials"}
)
_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")


def _quote(identifier: str) -> str:
    if not is_safe_sql_identifier(identifier):
        raise AdapterError(f"Refusing unsafe SQL identifier {identifier!r}")
    return f'"{identifier}"'


def _split_endpoint(endpoint: str, default_port: int) -> tuple[str, int]:
    host, sep, port = endpoint.rpartition(":")
    if sep and port.isdigit():
        return host, int(port)
    return endpoint, default_port


def rds_username(user: str) -> str:
    """RDS master user names are alphanumeric only."""
    return _NON_ALNUM_RE.sub("", user)


class PostgresDatabaseBackend:
    def __init__(
        self,
        *,
        admin_user: str = "postgres",
        admin_password: str | None = None,
        default_port: int = POSTGRES_PORT,
        rds_client=None,
        connect: ConnectFn | None = None,
    ) -> None:
        self._admin_user = admin_user
        self._admin_password = admin_password
        self._default_port = default_port
        self._rds = rds_client
        self._connect = connect or self._connect_admin

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresDatabaseBackend":
        return cls(
            admin_user=settings.shared_db_admin_user,
            admin_password=settings.shared_db_admin_password,
            default_port=settings.shared_db_port,
            rds_client=client_for(settings, "rds"),
        )

    @contextmanager
    def _connect_admin(self, endpoint: str) -> Iterator[Connection]:
        host, port = _split_endpoint(endpoint, self._default_port)
        url = URL.create(
            "postgresql+psycopg2",
            username=self._admin_user,
            password=self._admin_password,
            host=host,
            port=port,
            database="postgres",
        )
        engine = create_engine(url, isolation_level="AUTOCOMMIT", poolclass=NullPool)
        try:
            with engine.connect() as conn:
                yield conn
        finally:
            engine.dispose()

    def _sql_error(self, message: str, exc: SQLAlchemyError) -> AdapterError:
        return AdapterError(f"{message}: {exc}", category=classify_error(text=str(exc)))

    # -- shared tier --------------------------------------------------------

    def find_shared(self, placement: PoolPlacement, name: str) -> ResourceHandle | None:
        try:
            with self._connect(placement.endpoint) as conn:
                row = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": name}
                ).first()
        except SQLAlchemyError as exc:
            raise self._sql_error(f"Failed to look up database {name} on {placement.endpoint}", exc) from exc
        if row is None:
            return None
        return ResourceHandle(RESOURCE_SHARED_DATABASE, name, placement.endpoint)

    def create_shared(self, placement: PoolPlacement, name: str, user: str, password: str) -> DatabaseCredentials:
        database, role = _quote(name), _quote(user)
        logger.info("Creating database %s owned by %s on %s", name, user, placement.endpoint)
        try:
            with self._connect(placement.endpoint) as conn:
                self._upsert_role(conn, user, password)
                try:
                    conn.execute(text(f"CREATE DATABASE {database} OWNER {role}"))
                except SQLAlchemyError:
                    conn.execute(text(f"DROP ROLE IF EXISTS {role}"))
                    raise
                conn.execute(text(f"REVOKE ALL ON DATABASE {database} FROM PUBLIC"))
        except SQLAlchemyError as exc:
            raise self._sql_error(f"Failed to create database {name} on {placement.endpoint}", exc) from exc
        return self._shared_credentials(placement.endpoint, name, user, password)

    def _upsert_role(self, conn: Connection, user: str, password: str) -> None:
        role = _quote(user)
        exists = conn.execute(text("SELECT 1 FROM pg_roles WHERE rolname = :user"), {"user": user}).first()
        verb = "ALTER" if exists else "CREATE"
        conn.execute(text(f"{verb} ROLE {role} WITH LOGIN PASSWORD :password"), {"password": password})

    def _shared_credentials(self, endpoint: str, name: str, user: str, password: str) -> DatabaseCredentials:
        host, port = _split_endpoint(endpoint, self._default_port)
        return DatabaseCredentials(
            handle=ResourceHandle(RESOURCE_SHARED_DATABASE, name, endpoint),
            host=host,
            port=port,
            database=name,
            user=user,
            password=password,
        )

    def _delete_shared(self, handle: ResourceHandle) -> DeleteOutcome:
        assert handle.location is not None
        database = _quote(handle.identifier)
        try:
            with self._connect(handle.location) as conn:
                owner = conn.execute(
                    text("SELECT pg_get_userbyid(datdba) FROM pg_database WHERE datname = :name"),
                    {"name": handle.identifier},
                ).scalar()
                if owner is None:
                    return DeleteOutcome.NOT_FOUND
                conn.execute(
                    text(
                        "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                        "WHERE datname = :name AND pid <> pg_backend_pid()"
                    ),
                    {"name": handle.identifier},
                )
                conn.execute(text(f"DROP DATABASE IF EXISTS {database}"))
                if owner != self._admin_user:
                    conn.execute(text(f"DROP ROLE IF EXISTS {_quote(owner)}"))
        except SQLAlchemyError as exc:
            raise self._sql_error(f"Failed to drop database {handle.describe()}", exc) from exc
        logger.info("Dropped database %s", handle.describe())
        return DeleteOutcome.DELETED

    # -- dedicated tier -----------------------------------------------------

    def _require_rds(self):
        if self._rds is None:
            raise AdapterError("Dedicated databases require an RDS client")
        return self._rds

    def _describe(self, identifier: str) -> dict | None:
        try:
            response = self._require_rds().describe_db_instances(DBInstanceIdentifier=identifier)
        except ClientError as exc:
            if error_code(exc) == "DBInstanceNotFound":
                return None
            raise adapter_error(f"Failed to describe RDS instance {identifier}", exc) from exc
        except BotoCoreError as exc:
            raise adapter_error(f"Failed to describe RDS instance {identifier}", exc) from exc
        instances = response.get("DBInstances", [])
        return instances[0] if instances else None

    def find_dedicated(self, identifier: str) -> ResourceHandle | None:
        instance = self._describe(identifier)
        if instance is None or instance.get("DBInstanceStatus") == "deleting":
            return None
        return ResourceHandle(RESOURCE_DEDICATED_DATABASE, identifier)

    def create_dedicated(self, spec: DedicatedDatabaseSpec) -> tuple[DatabaseCredentials, str]:
        user = rds_username(spec.master_user)
        logger.info("Creating RDS instance %s (%s, %sGB)", spec.identifier, spec.instance_class, spec.allocated_storage_gb)
        try:
            self._require_rds().create_db_instance(
                DBInstanceIdentifier=spec.identifier,
                DBName=spec.database,
                Engine="postgres",
                DBInstanceClass=spec.instance_class,
                AllocatedStorage=spec.allocated_storage_gb,
                MasterUsername=user,
                MasterUserPassword=spec.master_password,
                PubliclyAccessible=False,
                StorageEncrypted=True,
                BackupRetentionPeriod=7,
                Tags=[{"Key": key, "Value": value} for key, value in spec.tags.items()],
            )
        except (ClientError, BotoCoreError) as exc:
            raise adapter_error(f"Failed to create RDS instance {spec.identifier}", exc) from exc
        creds = DatabaseCredentials(
            handle=ResourceHandle(RESOURCE_DEDICATED_DATABASE, spec.identifier),
            host=None,
            port=POSTGRES_PORT,
            database=spec.database,
            user=user,
            password=spec.master_password,
        )
        return creds, spec.identifier

    def poll_ready(self, poll_handle: str) -> PollStatus:
        instance = self._describe(poll_handle)
        if instance is None:
            raise AdapterError(f"RDS instance {poll_handle} disappeared while waiting for it")
        state = instance.get("DBInstanceStatus")
        if state in _RDS_FAILED_STATES:
            raise AdapterError(f"RDS instance {poll_handle} entered state {state}", code=state)
        if state not in _RDS_READY_STATES:
            return PollStatus(ready=False, state=state)
        endpoint = instance.get("Endpoint") or {}
        return PollStatus(ready=True, host=endpoint.get("Address"), state=state)

    def _reset_dedicated(self, handle: ResourceHandle, *, database: str, user: str, password: str) -> DatabaseCredentials:
        try:
            self._require_rds().modify_db_instance(
                DBInstanceIdentifier=handle.identifier,
                MasterUserPassword=password,
                ApplyImmediately=True,
            )
        except (ClientError, BotoCoreError) as exc:
            raise adapter_error(f"Failed to rotate password on {handle.identifier}", exc) from exc
        instance = self._describe(handle.identifier) or {}
        endpoint = instance.get("Endpoint") or {}
        return DatabaseCredentials(
            handle=handle,
            host=endpoint.get("Address"),
            port=endpoint.get("Port", POSTGRES_PORT),
            database=database,
            user=rds_username(user),
            password=password,
        )

    def _delete_dedicated(self, handle: ResourceHandle) -> DeleteOutcome:
        try:
            self._require_rds().delete_db_instance(
                DBInstanceIdentifier=handle.identifier,
                SkipFinalSnapshot=True,
                DeleteAutomatedBackups=True,
            )
        except ClientError as exc:
            code = error_code(exc)
            if code == "DBInstanceNotFound":
                return DeleteOutcome.NOT_FOUND
            if code == "InvalidDBInstanceState" and "deleting" in str(exc).lower():
                return DeleteOutcome.DELETED
            raise adapter_error(f"Failed to delete RDS instance {handle.identifier}", exc) from exc
        except BotoCoreError as exc:
            raise adapter_error(f"Failed to delete RDS instance {handle.identifier}", exc) from exc
        logger.info("Deleting RDS instance %s", handle.identifier)
        return DeleteOutcome.DELETED

    # -- both tiers ---------------------------------------------------------

    def reset_password(self, handle: ResourceHandle, *, database: str, user: str, password: str) -> DatabaseCredentials:
        if handle.kind == RESOURCE_DEDICATED_DATABASE:
            return self._reset_dedicated(handle, database=database, user=user, password=password)
        assert handle.location is not None
        try:
            with self._connect(handle.location) as conn:
                self._upsert_role(conn, user, password)
                conn.execute(text(f"ALTER DATABASE {_quote(database)} OWNER TO {_quote(user)}"))
        except SQLAlchemyError as exc:
            raise self._sql_error(f"Failed to rotate credentials for {handle.describe()}", exc) from exc
        return self._shared_credentials(handle.location, database, user, password)

    def delete(self, handle: ResourceHandle) -> DeleteOutcome:
        if handle.kind == RESOURCE_DEDICATED_DATABASE:
            return self._delete_dedicated(handle)
        return self._delete_shared(handle)
