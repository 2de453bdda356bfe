"""
Storage-layer guards.

These triggers sit beneath the application checks so that the invariants
hold even for writers that bypass the service layer, and so that racing
writers cannot slip an illegal transition between a read and a write:

- orders: status may only follow ORDER_TRANSITIONS; snapshot columns are frozen
- order_line_items: rows are never updated
- audit_entries: rows are never updated or deleted
- settlements: financial columns are frozen; a paid settlement is final

Violations surface as IntegrityError (SQLite RAISE(ABORT), PostgreSQL
check_violation).
"""

from __future__ import annotations

from sqlalchemy import DDL, event

from .orders import ORDER_TRANSITIONS, SNAPSHOT_COLUMNS
from .settlements import FINANCIAL_COLUMNS


def _legal_edges_sql() -> str:
    clauses = []
    for source, targets in ORDER_TRANSITIONS.items():
        if not targets:
            continue
        quoted = ", ".join(f"'{t}'" for t in targets)
        clauses.append(f"(OLD.status = '{source}' AND NEW.status IN ({quoted}))")
    return " OR ".join(clauses)


def _changed_sql(columns, op: str) -> str:
    return " OR ".join(f"NEW.{c} {op} OLD.{c}" for c in columns)


def _sqlite_guards() -> dict[str, list[str]]:
    return {
        "orders": [
            f"""
            CREATE TRIGGER IF NOT EXISTS trg_orders_status_transition
            BEFORE UPDATE OF status ON orders
            FOR EACH ROW
            WHEN OLD.status <> NEW.status AND NOT ({_legal_edges_sql()})
            BEGIN
                SELECT RAISE(ABORT, 'illegal order status transition');
            END
            """,
            f"""
            CREATE TRIGGER IF NOT EXISTS trg_orders_snapshot_immutable
            BEFORE UPDATE OF {", ".join(SNAPSHOT_COLUMNS)} ON orders
            FOR EACH ROW
            WHEN {_changed_sql(SNAPSHOT_COLUMNS, "IS NOT")}
            BEGIN
                SELECT RAISE(ABORT, 'order financial snapshot is immutable');
            END
            """,
        ],
        "order_line_items": [
            """
            CREATE TRIGGER IF NOT EXISTS trg_order_line_items_immutable
            BEFORE UPDATE ON order_line_items
            FOR EACH ROW
            BEGIN
                SELECT RAISE(ABORT, 'order line items are immutable');
            END
            """,
        ],
        "audit_entries": [
            """
            CREATE TRIGGER IF NOT EXISTS trg_audit_entries_no_update
            BEFORE UPDATE ON audit_entries
            FOR EACH ROW
            BEGIN
                SELECT RAISE(ABORT, 'audit entries are append-only');
            END
            """,
            """
            CREATE TRIGGER IF NOT EXISTS trg_audit_entries_no_delete
            BEFORE DELETE ON audit_entries
            FOR EACH ROW
            BEGIN
                SELECT RAISE(ABORT, 'audit entries are append-only');
            END
            """,
        ],
        "settlements": [
            """
            CREATE TRIGGER IF NOT EXISTS trg_settlements_paid_final
            BEFORE UPDATE ON settlements
            FOR EACH ROW
            WHEN OLD.status = 'paid'
            BEGIN
                SELECT RAISE(ABORT, 'paid settlements are final');
            END
            """,
            f"""
            CREATE TRIGGER IF NOT EXISTS trg_settlements_financials_immutable
            BEFORE UPDATE OF {", ".join(FINANCIAL_COLUMNS)} ON settlements
            FOR EACH ROW
            WHEN {_changed_sql(FINANCIAL_COLUMNS, "IS NOT")}
            BEGIN
                SELECT RAISE(ABORT, 'settlement financials are immutable');
            END
            """,
        ],
    }


def _pg_reject(message: str) -> str:
    return f"RAISE EXCEPTION USING MESSAGE = '{message}', ERRCODE = 'check_violation';"


def _postgresql_guards() -> dict[str, list[str]]:
    return {
        "orders": [
            f"""
            CREATE OR REPLACE FUNCTION chowline_guard_order_update() RETURNS trigger
            LANGUAGE plpgsql AS $$
            BEGIN
                IF {_changed_sql(SNAPSHOT_COLUMNS, "IS DISTINCT FROM")} THEN
                    {_pg_reject("order financial snapshot is immutable")}
                END IF;
                IF OLD.status <> NEW.status AND NOT ({_legal_edges_sql()}) THEN
                    {_pg_reject("illegal order status transition")}
                END IF;
                RETURN NEW;
            END;
            $$
            """,
            """
            CREATE TRIGGER trg_orders_guard
            BEFORE UPDATE ON orders
            FOR EACH ROW EXECUTE FUNCTION chowline_guard_order_update()
            """,
        ],
        "order_line_items": [
            f"""
            CREATE OR REPLACE FUNCTION chowline_reject_line_item_update() RETURNS trigger
            LANGUAGE plpgsql AS $$
            BEGIN
                {_pg_reject("order line items are immutable")}
            END;
            $$
            """,
            """
            CREATE TRIGGER trg_order_line_items_immutable
            BEFORE UPDATE ON order_line_items
            FOR EACH ROW EXECUTE FUNCTION chowline_reject_line_item_update()
            """,
        ],
        "audit_entries": [
            f"""
            CREATE OR REPLACE FUNCTION chowline_reject_audit_mutation() RETURNS trigger
            LANGUAGE plpgsql AS $$
            BEGIN
                {_pg_reject("audit entries are append-only")}
            END;
            $$
            """,
            """
            CREATE TRIGGER trg_audit_entries_append_only
            BEFORE UPDATE OR DELETE ON audit_entries
            FOR EACH ROW EXECUTE FUNCTION chowline_reject_audit_mutation()
            """,
        ],
        "settlements": [
            f"""
            CREATE OR REPLACE FUNCTION chowline_guard_settlement_update() RETURNS trigger
            LANGUAGE plpgsql AS $$
            BEGIN
                IF OLD.status = 'paid' THEN
                    {_pg_reject("paid settlements are final")}
                END IF;
                IF {_changed_sql(FINANCIAL_COLUMNS, "IS DISTINCT FROM")} THEN
                    {_pg_reject("settlement financials are immutable")}
                END IF;
                RETURN NEW;
            END;
            $$
            """,
            """
            CREATE TRIGGER trg_settlements_guard
            BEFORE UPDATE ON settlements
            FOR EACH ROW EXECUTE FUNCTION chowline_guard_settlement_update()
            """,
        ],
    }


def guard_statements(dialect_name: str) -> dict[str, list[str]]:
    """Trigger DDL per table for a dialect; empty for unsupported dialects."""
    if dialect_name == "sqlite":
        return _sqlite_guards()
    if dialect_name == "postgresql":
        return _postgresql_guards()
    return {}


def install_storage_guards(metadata) -> None:
    """Attach guard DDL to table creation (db.create_all / metadata.create_all)."""
    for dialect_name in ("sqlite", "postgresql"):
        for table_name, statements in guard_statements(dialect_name).items():
            table = metadata.tables[table_name]
            for statement in statements:
                event.listen(
                    table,
                    "after_create",
                    DDL(statement).execute_if(dialect=dialect_name),
                )
