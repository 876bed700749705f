import sys
from datetime import datetime

import pytest
from sqlalchemy import create_engine, event, inspect, select, text
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from ndiscare.models import CaseNote, Client, Shift, Tenant, User
from ndiscare.tenant_guard import (
    COMPOSITE_KEYS,
    _execute_statements,
    apply_composite_foreign_keys,
    composite_key_statements,
    is_non_critical_migration_error,
    verify_composite_constraints,
)


def _two_tenants(db):
    alpha = Tenant(slug="alpha", name="Alpha Care")
    beta = Tenant(slug="beta", name="Beta Care")
    db.add_all([alpha, beta])
    db.flush()
    return alpha, beta


def _shift(tenant_id, **kwargs):
    return Shift(
        tenant_id=tenant_id,
        title="Morning support",
        start_time=datetime(2030, 1, 7, 9, 0),
        end_time=datetime(2030, 1, 7, 11, 0),
        **kwargs,
    )


def test_shift_cannot_reference_client_of_another_tenant(session_factory):
    with session_factory() as db:
        alpha, beta = _two_tenants(db)
        client = Client(tenant_id=alpha.id, first_name="Jo", last_name="Citizen")
        db.add(client)
        db.commit()

        db.add(_shift(alpha.id, client_id=client.id))
        db.commit()

        db.add(_shift(beta.id, client_id=client.id))
        with pytest.raises(IntegrityError):
            db.commit()


def test_shift_cannot_reference_user_of_another_tenant(session_factory):
    with session_factory() as db:
        alpha, beta = _two_tenants(db)
        user = User(tenant_id=alpha.id, username="sam", full_name="Sam Worker", password_hash="x")
        db.add(user)
        db.commit()

        db.add(_shift(beta.id, user_id=user.id))
        with pytest.raises(IntegrityError):
            db.commit()


def test_case_note_cannot_cross_tenants(session_factory):
    with session_factory() as db:
        alpha, beta = _two_tenants(db)
        client = Client(tenant_id=beta.id, first_name="Lee", last_name="Participant")
        db.add(client)
        db.commit()

        db.add(CaseNote(tenant_id=alpha.id, client_id=client.id, title="Visit", content="All good"))
        with pytest.raises(IntegrityError):
            db.commit()


def test_deleting_client_cascades_to_its_shifts(session_factory):
    with session_factory() as db:
        alpha, _ = _two_tenants(db)
        client = Client(tenant_id=alpha.id, first_name="Jo", last_name="Citizen")
        db.add(client)
        db.flush()
        db.add(_shift(alpha.id, client_id=client.id))
        db.add(_shift(alpha.id))
        db.commit()

        db.delete(client)
        db.commit()
        db.expire_all()
        remaining = db.execute(select(Shift)).scalars().all()
        assert len(remaining) == 1
        assert remaining[0].client_id is None


def test_non_critical_migration_errors():
    assert is_non_critical_migration_error(Exception('constraint "uq_users_id_tenant" already exists'))
    assert is_non_critical_migration_error(
        ProgrammingError("ALTER TABLE", {}, Exception('constraint "fk_x" of relation "shifts" does not exist'))
    )
    assert not is_non_critical_migration_error(
        ProgrammingError("ALTER TABLE", {}, Exception("insert or update violates foreign key constraint"))
    )
    assert not is_non_critical_migration_error(Exception("permission denied for table shifts"))


def test_composite_key_statements_cover_every_key():
    statements = composite_key_statements()
    joined = "\n".join(statements)
    assert "ALTER TABLE clients ADD CONSTRAINT uq_clients_id_tenant UNIQUE (id, tenant_id)" in joined
    for key in COMPOSITE_KEYS:
        assert f"ADD CONSTRAINT {key.name} FOREIGN KEY ({', '.join(key.columns)})" in joined
    assert "REFERENCES users (id, tenant_id) ON DELETE SET NULL (user_id)" in joined
    assert "REFERENCES clients (id, tenant_id) ON DELETE CASCADE" in joined
    # Unique keys must exist before the foreign keys that reference them.
    first_fk = next(i for i, s in enumerate(statements) if "FOREIGN KEY" in s)
    last_unique = max(i for i, s in enumerate(statements) if "UNIQUE (id, tenant_id)" in s)
    assert last_unique < first_fk


def test_apply_on_sqlite_only_verifies(session_factory):
    engine = session_factory.kw["bind"]
    result = apply_composite_foreign_keys(engine)
    assert result["applied"] == 0
    tables = {(row["table"], tuple(row["columns"])) for row in result["constraints"]}
    assert ("shifts", ("client_id", "tenant_id")) in tables
    assert ("shifts", ("user_id", "tenant_id")) in tables
    assert ("invoice_lines", ("invoice_id", "tenant_id")) in tables


def _transactional_sqlite_engine(path):
    # pysqlite only emits BEGIN before DML; take over so DDL and savepoints
    # run inside the transaction.
    engine = create_engine(f"sqlite:///{path}")

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def test_execute_statements_skips_existing_and_rolls_back_on_failure(tmp_path):
    engine = _transactional_sqlite_engine(tmp_path / "ddl.db")
    try:
        with engine.begin() as conn:
            conn.execute(text("CREATE TABLE kept (id INTEGER PRIMARY KEY)"))

        with engine.begin() as conn:
            result = _execute_statements(
                conn,
                [
                    "CREATE TABLE kept (id INTEGER PRIMARY KEY)",
                    "CREATE TABLE added (id INTEGER PRIMARY KEY)",
                ],
            )
        assert result["applied"] == 1
        assert result["skipped"] == ["CREATE TABLE kept (id INTEGER PRIMARY KEY)"]

        with pytest.raises(OperationalError):
            with engine.begin() as conn:
                _execute_statements(
                    conn,
                    [
                        "CREATE TABLE rolled_back (id INTEGER PRIMARY KEY)",
                        "ALTER TABLE missing_table ADD COLUMN x INTEGER",
                    ],
                )

        assert set(inspect(engine).get_table_names()) == {"kept", "added"}
    finally:
        engine.dispose()


def test_new_tables_carry_composite_keys(session_factory):
    engine = session_factory.kw["bind"]
    with engine.connect() as conn:
        found = {(row["table"], row["referred_table"]) for row in verify_composite_constraints(conn)}
    assert ("participant_budgets", "clients") in found
    assert ("budget_transactions", "shifts") in found
    assert ("timesheets", "users") in found
    assert ("timesheet_entries", "timesheets") in found


def test_apply_script_succeeds_with_warning_when_no_keys_found(monkeypatch, tmp_path, capsys):
    from scripts import apply_composite_fks

    monkeypatch.setattr(apply_composite_fks, "setup_logging", lambda: None)
    monkeypatch.setattr(
        apply_composite_fks,
        "apply_composite_foreign_keys",
        lambda engine: {"applied": 0, "skipped": [], "constraints": []},
    )
    monkeypatch.setattr(
        sys, "argv", ["apply_composite_fks.py", "--database-url", f"sqlite:///{tmp_path / 'empty.db'}"]
    )

    assert apply_composite_fks.main() == 0
    out = capsys.readouterr().out
    assert "[PASS] Applied 0 statements, skipped 0" in out
    assert "[WARN] No tenant-scoped foreign keys found" in out
