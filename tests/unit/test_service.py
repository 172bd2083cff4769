"""
Unit tests -- authorization service: the full pipeline (no network needed).
"""
import pytest
from sqlalchemy import text

from src.db.audit_log import ensure_audit_table
from src.governance.cache import PolicyCache
from src.governance.catalog import load_catalog
from src.governance.errors import (
    ColumnAccessBlocked,
    ForbiddenOperation,
    MultiStatementRejected,
    PolicyMissing,
    SchemaViolation,
    SelectStarBlocked,
    SensitiveFieldBlocked,
    TableAccessDenied,
)
from src.governance.masking import FULL_MASK, mask_value
from src.governance.models import ColumnPermission, MaskType, PolicyRecord, Principal, TablePermission
from src.governance.policy_store import InMemoryPolicyStore, load_policy_store
from src.core.config import get_settings
from src.pipeline.service import apply_limit, authorize_and_rewrite, run_query


@pytest.fixture(scope="module")
def catalog():
    return load_catalog()


@pytest.fixture(scope="module")
def store():
    return load_policy_store()


ANALYST = Principal(id="u-1", email="alice@example.com", display_name="Alice", role="analyst", organization_id="acme")
VIEWER = Principal(id="u-2", email="bob@example.com", display_name="Bob", role="viewer", organization_id="acme")
ADMIN = Principal(id="root", email="root@example.com", role="admin", organization_id="acme")


def _authorize(sql, principal=ANALYST, with_catalog=True, **kw):
    kw.setdefault("store", load_policy_store())
    catalog = load_catalog() if with_catalog else None
    return authorize_and_rewrite(sql, principal, "warehouse", catalog, **kw)


# ── 1. Row limit ─────────────────────────────────────────

@pytest.mark.parametrize("sql, limit, expected", [
    ("SELECT id FROM users", 100, "SELECT id FROM users LIMIT 100"),
    ("SELECT id FROM users LIMIT 5", 100, "SELECT id FROM users LIMIT 5"),
    ("SELECT id FROM users", 0, "SELECT id FROM users"),
    ("SELECT id FROM users", None, "SELECT id FROM users"),
    ("SHOW TABLES", 100, "SHOW TABLES"),
    ("SELECT a FROM x UNION SELECT a FROM y", 10, "SELECT a FROM x UNION SELECT a FROM y LIMIT 10"),
    ("SELECT id FROM (SELECT id FROM users LIMIT 5) t", 10, "SELECT id FROM (SELECT id FROM users LIMIT 5) t LIMIT 10"),
])
def test_apply_limit(sql, limit, expected):
    assert apply_limit(sql, limit) == expected


# ── 2. Column access scenarios ───────────────────────────

def test_scenario_inaccessible_column():
    record = PolicyRecord(
        id="p", organization_id="acme", database_connection_id="warehouse", role="analyst",
        table_permissions=[TablePermission(table_name="users", column_permissions=[
            ColumnPermission(column_name="id", accessible=True),
            ColumnPermission(column_name="ssn", accessible=False),
        ])],
    )
    store = InMemoryPolicyStore([record])

    with pytest.raises(ColumnAccessBlocked) as exc:
        _authorize("SELECT ssn FROM users", store=store)
    assert exc.value.columns == ["users.ssn"]

    with pytest.raises(ColumnAccessBlocked) as exc:
        _authorize("SELECT id FROM users WHERE ssn='x'", store=store)
    assert exc.value.columns == ["users.ssn"]

    assert _authorize("SELECT id FROM users", store=store).sql == "SELECT id FROM users"


def test_scenario_column_only_in_predicate():
    with pytest.raises(ColumnAccessBlocked) as exc:
        _authorize("SELECT u.id FROM users u JOIN orders o ON u.id = o.user_id WHERE u.ssn = 'x'")
    assert exc.value.columns == ["users.ssn"]


def test_select_star_on_restricted_table():
    with pytest.raises(SelectStarBlocked):
        _authorize("SELECT * FROM users")


# ── 3. Rewriting ─────────────────────────────────────────

def test_analyst_orders_filtered_by_user_id():
    authorized = _authorize("SELECT id, amount FROM orders")
    assert authorized.sql == "SELECT id, amount FROM orders WHERE (orders.user_id = 'u-1')"
    assert authorized.applied_filters == ["orders: orders.user_id = 'u-1'"]
    assert authorized.tables == ["orders"]
    assert authorized.original_sql == "SELECT id, amount FROM orders"


def test_viewer_template_filter():
    authorized = _authorize("SELECT id, amount FROM orders WHERE status = 'paid'", VIEWER)
    assert authorized.sql == (
        "SELECT id, amount FROM orders WHERE (status = 'paid') AND (orders.owner_email = 'bob@example.com')"
    )


def test_unfiltered_table_is_untouched():
    assert _authorize("SELECT name, price FROM products").sql == "SELECT name, price FROM products"


def test_comments_are_removed_from_executed_sql():
    authorized = _authorize("SELECT name FROM products -- cheap ones\n WHERE price < 10")
    assert authorized.sql == "SELECT name FROM products WHERE price < 10"


def test_limit_is_appended_after_filter():
    authorized = _authorize("SELECT id FROM orders", limit=10)
    assert authorized.sql == "SELECT id FROM orders WHERE (orders.user_id = 'u-1') LIMIT 10"


def test_admin_is_not_rewritten():
    authorized = _authorize("SELECT ssn FROM users", ADMIN)
    assert authorized.sql == "SELECT ssn FROM users"
    assert authorized.applied_filters == []


def test_admin_without_policy_record():
    authorized = authorize_and_rewrite("SELECT 1", ADMIN, "lake", None, store=InMemoryPolicyStore())
    assert authorized.policy.is_admin


# ── 4. Rejections ────────────────────────────────────────

def test_rejections_in_pipeline_order():
    with pytest.raises(MultiStatementRejected):
        _authorize("SELECT 1; SELECT 2")
    with pytest.raises(ForbiddenOperation):
        _authorize("DELETE FROM orders")
    with pytest.raises(SchemaViolation):
        _authorize("SELECT nickname FROM users")


def test_disabled_table_denied():
    with pytest.raises(TableAccessDenied) as exc:
        _authorize("SELECT amount FROM salaries")
    assert exc.value.tables == ["salaries"]


def test_viewer_cannot_read_users():
    with pytest.raises(TableAccessDenied):
        _authorize("SELECT id FROM users", VIEWER)


def test_missing_policy():
    stranger = Principal(id="x", role="analyst", organization_id="globex")
    with pytest.raises(PolicyMissing):
        _authorize("SELECT id FROM products", stranger)


def test_schema_skipped_without_catalog():
    authorized = _authorize("SELECT id FROM products WHERE colour = 'red'", with_catalog=False)
    assert authorized.tables == ["products"]


def test_policy_cache_is_used():
    cache = PolicyCache(ttl=60)
    _authorize("SELECT id FROM products", cache=cache)
    _authorize("SELECT id FROM products", cache=cache)
    assert cache.stats()["hits"] == 1


# ── 5. run_query end to end (SQLite) ─────────────────────

def test_run_query_filters_and_masks(warehouse, catalog, store):
    outcome = run_query(
        "SELECT o.id, o.amount, u.email, u.phone FROM orders o JOIN users u ON o.user_id = u.id ORDER BY o.id",
        ANALYST, "warehouse", catalog, store=store, audit=False,
    )
    assert outcome.success, outcome.error
    rows = outcome.result.rows
    assert [r["id"] for r in rows] == ["o-1", "o-3"]
    assert rows[0]["email"] == "a***@example.com"
    assert rows[0]["phone"] == mask_value("555-123-4567", MaskType.HASH)


def test_run_query_masks_aliased_column(warehouse, catalog, store):
    outcome = run_query(
        "SELECT email AS contact FROM users ORDER BY id", ANALYST, "warehouse", catalog,
        store=store, audit=False,
    )
    assert [r["contact"] for r in outcome.result.rows] == ["a***@example.com", "b***@example.com"]


def test_run_query_viewer_full_mask(warehouse, catalog, store):
    outcome = run_query("SELECT id, amount FROM orders", VIEWER, "warehouse", catalog, store=store, audit=False)
    assert outcome.result.rows == [{"id": "o-2", "amount": FULL_MASK}]


def test_run_query_admin_masking(warehouse, catalog, store):
    outcome = run_query(
        "SELECT id, ssn FROM users ORDER BY id", ADMIN, "warehouse", catalog, store=store, audit=False,
    )
    assert [r["ssn"] for r in outcome.result.rows] == [FULL_MASK, FULL_MASK]


def test_run_query_blocked_is_returned_not_raised(catalog, store):
    outcome = run_query("SELECT ssn FROM users", ANALYST, "warehouse", catalog, store=store, audit=False)
    assert not outcome.success
    assert outcome.error.kind == "column_access_blocked"
    assert outcome.sql is None
    assert outcome.result is None


def test_run_query_without_execution(catalog, store):
    outcome = run_query(
        "SELECT id FROM orders", ANALYST, "warehouse", catalog, store=store, execute=False, audit=False,
    )
    assert outcome.success
    assert outcome.sql == "SELECT id FROM orders WHERE (orders.user_id = 'u-1')"
    assert outcome.result is None


def test_run_query_execution_error(catalog, store):
    def failing(sql):
        raise RuntimeError("connection lost")

    outcome = run_query(
        "SELECT id FROM products", ANALYST, "warehouse", catalog, store=store, audit=False, executor=failing,
    )
    assert not outcome.success
    assert outcome.error is None
    assert outcome.execution_error == "connection lost"


def test_run_query_writes_audit_log(warehouse, catalog, store):
    ensure_audit_table(warehouse)
    run_query("SELECT id FROM orders", ANALYST, "warehouse", catalog, store=store)
    run_query("SELECT ssn FROM users", ANALYST, "warehouse", catalog, store=store)
    with warehouse.connect() as conn:
        rows = conn.execute(text(
            "SELECT status, error_kind, final_sql, row_count FROM authz_audit_logs ORDER BY id"
        )).fetchall()
    assert rows[0] == ("allowed", None, "SELECT id FROM orders WHERE (orders.user_id = 'u-1')", 2)
    assert rows[1][0:2] == ("blocked", "column_access_blocked")
    assert rows[1][2] is None


# ── 6. Evasion forms ─────────────────────────────────────

@pytest.mark.parametrize("sql", [
    "SELECT row_to_json(u.*) FROM users u",
    "SELECT to_jsonb(u) FROM users u",
    "SELECT u FROM users u",
])
def test_whole_row_of_restricted_table(sql):
    with pytest.raises(SelectStarBlocked):
        _authorize(sql)


@pytest.mark.parametrize("sql", [
    "SELECT u.e FROM users u(a, b, c, d, e)",
    "SELECT ssn 'x' FROM users",
])
def test_renamed_or_string_aliased_column(sql):
    with pytest.raises(ColumnAccessBlocked) as exc:
        _authorize(sql)
    assert exc.value.columns == ["users.ssn"]


def test_keyword_named_column():
    record = PolicyRecord(
        id="p", organization_id="acme", database_connection_id="warehouse", role="analyst",
        table_permissions=[TablePermission(table_name="events", column_permissions=[
            ColumnPermission(column_name="range", accessible=False),
        ])],
    )
    with pytest.raises(ColumnAccessBlocked) as exc:
        _authorize("SELECT range FROM events", with_catalog=False, store=InMemoryPolicyStore([record]))
    assert exc.value.columns == ["events.range"]


def test_run_query_string_alias_does_not_leak(warehouse, catalog, store):
    outcome = run_query("SELECT ssn 'x' FROM users", ANALYST, "warehouse", catalog, store=store, audit=False)
    assert outcome.error.kind == "column_access_blocked"
    assert outcome.result is None


@pytest.mark.parametrize("sql, column, expected", [
    ("SELECT lower(email) FROM users ORDER BY id", "lower(email)", ["a***@example.com", "b***@example.com"]),
    ("SELECT id, email || '' FROM users ORDER BY id", "email || ''", ["a***@example.com", "b***@example.com"]),
    (
        "SELECT phone || '' FROM users ORDER BY id", "phone || ''",
        [mask_value("555-123-4567", MaskType.HASH), mask_value("555-987-6543", MaskType.HASH)],
    ),
])
def test_run_query_masks_unnamed_expressions(warehouse, catalog, store, sql, column, expected):
    outcome = run_query(sql, ANALYST, "warehouse", catalog, store=store, audit=False)
    assert outcome.success, outcome.error
    assert [r[column] for r in outcome.result.rows] == expected


# ── 7. Credential fields ─────────────────────────────────

@pytest.fixture
def api_clients(warehouse):
    with warehouse.begin() as conn:
        conn.execute(text("CREATE TABLE api_clients (id VARCHAR PRIMARY KEY, name VARCHAR, api_key VARCHAR)"))
        conn.execute(text("INSERT INTO api_clients VALUES ('c-1', 'etl', 'k-123')"))
    return warehouse


def test_credential_column_blocked_for_admin(api_clients, store):
    outcome = run_query("SELECT name, api_key FROM api_clients", ADMIN, "warehouse", None, store=store, audit=False)
    assert isinstance(outcome.error, SensitiveFieldBlocked)
    assert outcome.error.columns == ["api_clients.api_key"]


def test_credential_column_stripped_from_wildcard_result(api_clients, store):
    outcome = run_query("SELECT * FROM api_clients", ADMIN, "warehouse", None, store=store, audit=False)
    assert outcome.success, outcome.error
    assert outcome.result.columns == ["id", "name"]
    assert outcome.result.rows == [{"id": "c-1", "name": "etl"}]


def test_credential_guard_can_be_disabled(api_clients, store, monkeypatch):
    monkeypatch.setattr(get_settings(), "block_sensitive_fields", False)
    outcome = run_query("SELECT api_key FROM api_clients", ADMIN, "warehouse", None, store=store, audit=False)
    assert outcome.result.rows == [{"api_key": "k-123"}]
