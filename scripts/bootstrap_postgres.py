#!/usr/bin/env python3
"""Bootstrap a PostgreSQL database for the BranchChat application."""
from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from branchchat.store import CLEAR_STAGES, schema_statements


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


@dataclass
class BootstrapConfig:
    superuser: str
    superuser_db: str
    host: str
    port: str
    superuser_password: Optional[str]
    db_name: str
    db_user: str
    db_password: str
    db_schema: Optional[str]
    schema_file: Optional[Path]
    dry_run: bool

    @classmethod
    def from_env(cls, args: argparse.Namespace) -> "BootstrapConfig":
        schema_path: Optional[Path] = None
        schema_env = args.schema or os.environ.get("BRANCHCHAT_SCHEMA_FILE", "").strip()
        if schema_env:
            schema_path = Path(schema_env).expanduser().resolve()

        dry_run = args.dry_run or _env_bool("BRANCHCHAT_BOOTSTRAP_DRY_RUN", False)

        pg_schema = (os.environ.get("BRANCHCHAT_PG_SCHEMA") or "").strip() or None

        return cls(
            superuser=os.environ.get("POSTGRES_SUPERUSER", "postgres"),
            superuser_db=os.environ.get("POSTGRES_SUPERUSER_DB", "postgres"),
            host=os.environ.get("POSTGRES_SUPERUSER_HOST", "localhost"),
            port=os.environ.get("POSTGRES_SUPERUSER_PORT", "5432"),
            superuser_password=(
                os.environ.get("POSTGRES_SUPERUSER_PASSWORD")
                or os.environ.get("PGPASSWORD")
                or os.environ.get("POSTGRES_PASSWORD")
                or None
            ),
            db_name=os.environ.get("BRANCHCHAT_DB_NAME", "branchchat"),
            db_user=os.environ.get("BRANCHCHAT_DB_USER", "branchchat"),
            db_password=os.environ.get("BRANCHCHAT_DB_PASSWORD", "branchchat_password"),
            db_schema=pg_schema,
            schema_file=schema_path,
            dry_run=dry_run,
        )

    @property
    def target_schema(self) -> str:
        return self.db_schema or "public"

    def dsn(self, *, redact: bool = False) -> str:
        password = "***" if redact else self.db_password
        return f"postgresql://{self.db_user}:{password}@{self.host}:{self.port}/{self.db_name}"


class BootstrapError(RuntimeError):
    """Raised when bootstrapping fails."""


def _log(message: str) -> None:
    print(f"[branchchat-bootstrap] {message}")


def _log_error(message: str) -> None:
    print(f"[branchchat-bootstrap] ERROR: {message}", file=sys.stderr)


def _ensure_psycopg():
    try:
        import psycopg  # type: ignore
        from psycopg import sql  # type: ignore
    except ImportError as exc:  # pragma: no cover - depends on environment
        _log_error(
            "The psycopg package is required to run this script. Install it with `pip install psycopg[binary]`."
        )
        raise SystemExit(1) from exc

    return psycopg, sql


def _assert_schema_exists(path: Optional[Path]) -> None:
    if path is not None and not path.exists():
        raise BootstrapError(f"Schema file not found: {path}")


def _superuser_conninfo(config: BootstrapConfig, dbname: str) -> dict:
    return {
        "user": config.superuser,
        "password": config.superuser_password,
        "host": config.host,
        "port": config.port,
        "dbname": dbname,
    }


def _bootstrap_database(config: BootstrapConfig) -> None:
    psycopg, sql = _ensure_psycopg()

    _log(
        "Connecting as superuser '%s' to database '%s' on %s:%s..."
        % (config.superuser, config.superuser_db, config.host, config.port)
    )

    try:
        with psycopg.connect(**_superuser_conninfo(config, config.superuser_db)) as conn:  # type: ignore[arg-type]
            conn.autocommit = True
            with conn.cursor() as cur:
                _ensure_role(cur, sql, config)
                _ensure_database(cur, sql, config)
                _grant_privileges(cur, sql, config)
    except Exception as exc:  # pragma: no cover - exercised via integration usage
        message = str(exc)
        if (
            config.superuser_password is None
            and "password" in message.lower()
        ):
            message += (
                "\nHint: provide the superuser password via POSTGRES_SUPERUSER_PASSWORD, "
                "PGPASSWORD, or POSTGRES_PASSWORD."
            )
        raise BootstrapError(message) from exc

    _ensure_application_objects(psycopg, sql, config)

    if config.schema_file is not None:
        _apply_schema(psycopg, config)


def _ensure_application_objects(psycopg, sql, config: BootstrapConfig) -> None:
    try:
        with psycopg.connect(**_superuser_conninfo(config, config.db_name)) as conn:  # type: ignore[arg-type]
            conn.autocommit = True
            with conn.cursor() as cur:
                schema_identifier = sql.Identifier(config.target_schema)
                if config.db_schema:
                    _log(f"Ensuring schema '{config.db_schema}' exists...")
                    cur.execute(
                        sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(schema_identifier)
                    )
                    cur.execute(
                        sql.SQL("GRANT USAGE ON SCHEMA {} TO {}").format(
                            schema_identifier, sql.Identifier(config.db_user)
                        )
                    )
                cur.execute(
                    sql.SQL("SET search_path TO {}, pg_catalog").format(schema_identifier)
                )

                _log(
                    "Ensuring chat tables %s exist in schema '%s'..."
                    % (", ".join(reversed(CLEAR_STAGES)), config.target_schema)
                )
                for statement in schema_statements():
                    cur.execute(statement)

                for kind in ("TABLES", "SEQUENCES"):
                    cur.execute(
                        sql.SQL("GRANT ALL PRIVILEGES ON ALL {} IN SCHEMA {} TO {}").format(
                            sql.SQL(kind), schema_identifier, sql.Identifier(config.db_user)
                        )
                    )
    except Exception as exc:  # pragma: no cover - exercised via integration usage
        raise BootstrapError(f"Failed to ensure application schema: {exc}") from exc


def _ensure_role(cur, sql, config: BootstrapConfig) -> None:
    cur.execute("SELECT 1 FROM pg_roles WHERE rolname = %s", (config.db_user,))
    exists = cur.fetchone() is not None

    if not exists:
        _log(f"Creating role '{config.db_user}'...")
        cur.execute(
            sql.SQL("CREATE ROLE {} LOGIN PASSWORD {}").format(
                sql.Identifier(config.db_user),
                sql.Literal(config.db_password),
            )
        )
    else:
        _log(f"Updating password for role '{config.db_user}'...")
        cur.execute(
            sql.SQL("ALTER ROLE {} WITH LOGIN PASSWORD {}").format(
                sql.Identifier(config.db_user),
                sql.Literal(config.db_password),
            )
        )


def _ensure_database(cur, sql, config: BootstrapConfig) -> None:
    cur.execute("SELECT 1 FROM pg_database WHERE datname = %s", (config.db_name,))
    exists = cur.fetchone() is not None

    if not exists:
        _log(f"Creating database '{config.db_name}' owned by '{config.db_user}'...")
        cur.execute(
            sql.SQL(
                "CREATE DATABASE {} WITH OWNER {} TEMPLATE template0 ENCODING 'UTF8'"
            ).format(sql.Identifier(config.db_name), sql.Identifier(config.db_user))
        )
    else:
        _log(f"Database '{config.db_name}' already exists; skipping creation.")


def _grant_privileges(cur, sql, config: BootstrapConfig) -> None:
    _log(f"Granting privileges on database '{config.db_name}' to '{config.db_user}'...")
    cur.execute(
        sql.SQL("GRANT ALL PRIVILEGES ON DATABASE {} TO {}").format(
            sql.Identifier(config.db_name), sql.Identifier(config.db_user)
        )
    )


def _apply_schema(psycopg, config: BootstrapConfig) -> None:
    schema_file = config.schema_file
    assert schema_file is not None

    _log(f"Applying schema from {schema_file}...")
    sql_text = schema_file.read_text(encoding="utf-8")

    if not sql_text.strip():
        _log("Schema file is empty; nothing to apply.")
        return

    conninfo = {
        "user": config.db_user,
        "password": config.db_password,
        "host": config.host,
        "port": config.port,
        "dbname": config.db_name,
    }

    try:
        with psycopg.connect(**conninfo) as conn:  # type: ignore[arg-type]
            conn.autocommit = True
            with conn.cursor() as cur:
                cur.execute(sql_text, prepare=False)
    except Exception as exc:  # pragma: no cover - exercised via integration usage
        raise BootstrapError(f"Failed to apply schema: {exc}") from exc


def dry_run_plan(config: BootstrapConfig) -> List[str]:
    plan = [
        "DRY RUN: no changes will be applied.",
        "Would connect as '%s' to '%s' on %s:%s."
        % (config.superuser, config.superuser_db, config.host, config.port),
        "Would ensure role '%s' exists with the configured password." % config.db_user,
        "Would ensure database '%s' exists owned by '%s'." % (config.db_name, config.db_user),
    ]
    if config.db_schema:
        plan.append(
            f"Would ensure schema '{config.db_schema}' exists and is accessible to '{config.db_user}'."
        )
    plan.append(
        "Would ensure tables %s exist in schema '%s' with indexes."
        % (", ".join(reversed(CLEAR_STAGES)), config.target_schema)
    )
    if config.schema_file is not None:
        plan.append(f"Would apply schema from {config.schema_file}.")
    return plan


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the operations without executing them (can also be enabled via BRANCHCHAT_BOOTSTRAP_DRY_RUN).",
    )
    parser.add_argument(
        "--schema",
        type=str,
        help="Path to an extra SQL file to apply (overrides BRANCHCHAT_SCHEMA_FILE).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    config = BootstrapConfig.from_env(args)

    try:
        _assert_schema_exists(config.schema_file)

        if config.dry_run:
            for line in dry_run_plan(config):
                _log(line)
        else:
            _bootstrap_database(config)

    except BootstrapError as exc:
        _log_error(str(exc))
        return 1

    _log("PostgreSQL bootstrap complete.")
    _log(f"Set BRANCHCHAT_PG_DSN={config.dsn(redact=True)} to use this database.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via subprocess
    sys.exit(main())
