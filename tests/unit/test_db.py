"""
Unit tests -- read-only executor and authorization audit log (SQLite).
"""
import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from src.db.audit_log import ensure_audit_table, log_decision
from src.db.executor import execute_readonly


# ── 1. Executor ──────────────────────────────────────────

def test_execute_returns_columns_and_rows(warehouse):
    result = execute_readonly("SELECT id, amount FROM orders ORDER BY id")
    assert result.columns == ["id", "amount"]
    assert result.row_count == 3
    assert result.rows[0] == {"id": "o-1", "amount": 10.5}


def test_colons_are_literal_text(warehouse):
    result = execute_readonly("SELECT 'a:b' AS v")
    assert result.rows == [{"v": "a:b"}]


def test_params_are_bound(warehouse):
    result = execute_readonly("SELECT id FROM users WHERE id = :uid", {"uid": "u-2"})
    assert result.rows == [{"id": "u-2"}]


def test_writes_fail_on_readonly_connection(warehouse):
    with pytest.raises(OperationalError):
        execute_readonly("DELETE FROM orders")
    with warehouse.connect() as conn:
        assert conn.execute(text("SELECT COUNT(*) FROM orders")).scalar() == 3


def test_connection_is_writable_again_afterwards(warehouse):
    execute_readonly("SELECT 1")
    with warehouse.begin() as conn:
        conn.execute(text("INSERT INTO products VALUES ('p-2', 'Gadget', 'tools', 1)"))
        assert conn.execute(text("SELECT COUNT(*) FROM products")).scalar() == 2


def test_driver_errors_propagate(warehouse):
    with pytest.raises(OperationalError):
        execute_readonly("SELECT nope FROM orders")


# ── 2. Audit log ─────────────────────────────────────────

def _audit_rows(engine):
    with engine.connect() as conn:
        return conn.execute(text(
            "SELECT principal_id, status, error_kind, applied_filters, row_count FROM authz_audit_logs"
        )).fetchall()


def test_log_decision_writes_row(warehouse):
    ensure_audit_table(warehouse)
    log_decision(
        principal_id="u-1",
        organization_id="acme",
        connection_id="warehouse",
        role="analyst",
        original_sql="SELECT id FROM orders",
        final_sql="SELECT id FROM orders WHERE (orders.user_id = 'u-1')",
        status="allowed",
        applied_filters=["orders: orders.user_id = 'u-1'"],
        row_count=2,
        latency_ms=3,
    )
    rows = _audit_rows(warehouse)
    assert len(rows) == 1
    principal_id, status, error_kind, filters, row_count = rows[0]
    assert (principal_id, status, error_kind, row_count) == ("u-1", "allowed", None, 2)
    assert filters == '["orders: orders.user_id = \'u-1\'"]'


def test_log_decision_never_raises(warehouse):
    ensure_audit_table(warehouse)
    with warehouse.begin() as conn:
        conn.execute(text("DROP TABLE authz_audit_logs"))
    log_decision(
        principal_id="u-1", organization_id="acme", connection_id="warehouse", role="analyst",
        original_sql="SELECT 1", final_sql=None, status="blocked", error_kind="empty_query",
    )
