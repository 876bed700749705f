"""Composite (entity id, tenant id) keys for existing databases.

New databases get the constraints from the ORM metadata. Databases created
before the composite keys existed are upgraded with
``apply_composite_foreign_keys``, which is safe to run repeatedly.
"""

from dataclasses import dataclass

import structlog
from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError

logger = structlog.get_logger("ndiscare.tenant_guard")

_NON_CRITICAL_MARKERS = ("already exists", "does not exist")

TENANT_UNIQUE_TABLES = ("users", "clients", "shifts", "invoices", "form_templates", "timesheets")


@dataclass(frozen=True)
class CompositeKey:
    table: str
    columns: tuple[str, str]
    parent: str
    name: str
    ondelete: str | None = None
    # Single-column FK created by earlier schema versions.
    legacy_name: str | None = None


COMPOSITE_KEYS = (
    CompositeKey("shifts", ("client_id", "tenant_id"), "clients", "fk_shifts_client_tenant", "CASCADE", "shifts_client_id_fkey"),
    CompositeKey("shifts", ("user_id", "tenant_id"), "users", "fk_shifts_user_tenant", "SET NULL (user_id)", "shifts_user_id_fkey"),
    CompositeKey("case_notes", ("client_id", "tenant_id"), "clients", "fk_case_notes_client_tenant", "CASCADE", "case_notes_client_id_fkey"),
    CompositeKey("medication_records", ("client_id", "tenant_id"), "clients", "fk_medication_records_client_tenant", "CASCADE", "medication_records_client_id_fkey"),
    CompositeKey("care_plans", ("client_id", "tenant_id"), "clients", "fk_care_plans_client_tenant", "CASCADE", "care_plans_client_id_fkey"),
    CompositeKey("invoices", ("client_id", "tenant_id"), "clients", "fk_invoices_client_tenant", "CASCADE", "invoices_client_id_fkey"),
    CompositeKey("invoice_lines", ("invoice_id", "tenant_id"), "invoices", "fk_invoice_lines_invoice_tenant", "CASCADE", "invoice_lines_invoice_id_fkey"),
    CompositeKey("shift_cancellations", ("shift_id", "tenant_id"), "shifts", "fk_shift_cancellations_shift_tenant", "CASCADE", "shift_cancellations_shift_id_fkey"),
    CompositeKey("form_submissions", ("template_id", "tenant_id"), "form_templates", "fk_form_submissions_template_tenant", "CASCADE", "form_submissions_template_id_fkey"),
    CompositeKey("form_submissions", ("client_id", "tenant_id"), "clients", "fk_form_submissions_client_tenant", "CASCADE", "form_submissions_client_id_fkey"),
    CompositeKey("auth_sessions", ("user_id", "tenant_id"), "users", "fk_auth_sessions_user_tenant", "CASCADE", "auth_sessions_user_id_fkey"),
    CompositeKey("participant_budgets", ("client_id", "tenant_id"), "clients", "fk_participant_budgets_client_tenant", "CASCADE"),
    CompositeKey("budget_transactions", ("shift_id", "tenant_id"), "shifts", "fk_budget_transactions_shift_tenant", "CASCADE"),
    CompositeKey("budget_transactions", ("client_id", "tenant_id"), "clients", "fk_budget_transactions_client_tenant", "CASCADE"),
    CompositeKey("timesheets", ("user_id", "tenant_id"), "users", "fk_timesheets_user_tenant", "CASCADE"),
    CompositeKey("timesheet_entries", ("timesheet_id", "tenant_id"), "timesheets", "fk_timesheet_entries_timesheet_tenant", "CASCADE"),
    CompositeKey("timesheet_entries", ("shift_id", "tenant_id"), "shifts", "fk_timesheet_entries_shift_tenant", "CASCADE"),
)


def is_non_critical_migration_error(exc: BaseException) -> bool:
    message = str(getattr(exc, "orig", None) or exc).lower()
    return any(marker in message for marker in _NON_CRITICAL_MARKERS)


def composite_key_statements() -> list[str]:
    statements: list[str] = []
    for table in TENANT_UNIQUE_TABLES:
        statements.append(
            f"ALTER TABLE {table} ADD CONSTRAINT uq_{table}_id_tenant UNIQUE (id, tenant_id)"
        )
    for key in COMPOSITE_KEYS:
        if key.legacy_name:
            statements.append(
                f"ALTER TABLE {key.table} DROP CONSTRAINT IF EXISTS {key.legacy_name}"
            )
        statements.append(f"ALTER TABLE {key.table} DROP CONSTRAINT IF EXISTS {key.name}")
        on_delete = f" ON DELETE {key.ondelete}" if key.ondelete else ""
        statements.append(
            f"ALTER TABLE {key.table} ADD CONSTRAINT {key.name} "
            f"FOREIGN KEY ({', '.join(key.columns)}) "
            f"REFERENCES {key.parent} (id, tenant_id){on_delete}"
        )
        statements.append(
            f"CREATE INDEX IF NOT EXISTS ix_{key.table}_{key.columns[0]}_tenant "
            f"ON {key.table} ({', '.join(key.columns)})"
        )
    return statements


def _execute_statements(conn: Connection, statements: list[str]) -> dict:
    applied = 0
    skipped: list[str] = []
    for statement in statements:
        savepoint = conn.begin_nested()
        try:
            conn.execute(text(statement))
            savepoint.commit()
            applied += 1
        except DBAPIError as exc:
            savepoint.rollback()
            if not is_non_critical_migration_error(exc):
                logger.error("composite_fk_statement_failed", statement=statement, error=str(exc.orig))
                raise
            logger.info("composite_fk_statement_skipped", statement=statement, reason=str(exc.orig))
            skipped.append(statement)
    return {"applied": applied, "skipped": skipped}


def apply_composite_foreign_keys(engine: Engine) -> dict:
    """Apply composite tenant keys in one transaction, then verify them.

    Statements failing because the object already exists or is already gone
    are skipped. Any other failure rolls the whole transaction back and is
    re-raised.
    """
    if engine.dialect.name == "sqlite":
        # SQLite cannot add constraints to existing tables; they come from
        # the table definitions.
        logger.info("composite_fk_apply_skipped", dialect="sqlite")
        result = {"applied": 0, "skipped": []}
    else:
        with engine.begin() as conn:
            result = _execute_statements(conn, composite_key_statements())
        logger.info(
            "composite_fk_applied",
            applied=result["applied"],
            skipped=len(result["skipped"]),
        )

    with engine.connect() as conn:
        result["constraints"] = verify_composite_constraints(conn)
    return result


def verify_composite_constraints(conn: Connection) -> list[dict]:
    inspector = inspect(conn)
    found: list[dict] = []
    for table in sorted(inspector.get_table_names()):
        for fk in inspector.get_foreign_keys(table):
            columns = list(fk.get("constrained_columns") or [])
            if len(columns) < 2 or not any("tenant" in c for c in columns):
                continue
            row = {
                "table": table,
                "name": fk.get("name"),
                "columns": columns,
                "referred_table": fk.get("referred_table"),
                "referred_columns": list(fk.get("referred_columns") or []),
                "ondelete": (fk.get("options") or {}).get("ondelete"),
            }
            logger.info("composite_fk_verified", **row)
            found.append(row)
    if not found:
        logger.warning("composite_fk_missing", detail="no tenant-scoped foreign keys found")
    return found
