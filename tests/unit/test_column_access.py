"""
Unit tests -- column-level access enforcement (SELECT * and column references).
"""
import pytest

from src.governance.catalog import Catalog, Column, Table, load_catalog
from src.governance.column_access import enforce_column_access
from src.governance.errors import ColumnAccessBlocked, SelectStarBlocked
from src.governance.models import ColumnPermission, PolicyRecord, Principal, TablePermission
from src.governance.policy import compile_policy
from src.governance.policy_store import InMemoryPolicyStore, load_policy_store


@pytest.fixture(scope="module")
def catalog():
    return load_catalog()


@pytest.fixture(scope="module")
def policy():
    analyst = Principal(id="u-1", role="analyst", organization_id="acme")
    return compile_policy(analyst, "warehouse", load_policy_store())


def _blocked(sql, catalog, policy):
    with pytest.raises(ColumnAccessBlocked) as exc:
        enforce_column_access(sql, catalog, policy)
    return exc.value.columns


# ── 1. SELECT * ──────────────────────────────────────────

@pytest.mark.parametrize("sql", [
    "SELECT * FROM users",
    "SELECT u.* FROM users u",
    "SELECT * FROM orders o JOIN users u ON o.user_id = u.id",
    "SELECT id FROM orders WHERE user_id IN (SELECT * FROM users)",
])
def test_select_star_blocked(catalog, policy, sql):
    with pytest.raises(SelectStarBlocked) as exc:
        enforce_column_access(sql, catalog, policy)
    assert exc.value.tables == ["users"]


@pytest.mark.parametrize("sql", [
    "SELECT * FROM products",
    "SELECT o.* FROM orders o JOIN users u ON o.user_id = u.id",
    "SELECT COUNT(*) FROM users",
    "SELECT t.* FROM (SELECT id, email FROM users) t",
])
def test_select_star_allowed(catalog, policy, sql):
    enforce_column_access(sql, catalog, policy)


# ── 2. Inaccessible column in any clause ─────────────────

@pytest.mark.parametrize("sql", [
    "SELECT ssn FROM users",
    "SELECT u.ssn FROM users u",
    "SELECT id FROM users WHERE ssn = 'x'",
    "SELECT u.id FROM users u JOIN orders o ON u.id = o.user_id WHERE u.ssn = 'x'",
    "SELECT o.id FROM orders o JOIN users u ON u.id = o.user_id AND u.ssn LIKE '1%'",
    "SELECT COUNT(*) FROM users GROUP BY ssn",
    "SELECT COUNT(*) FROM users GROUP BY id HAVING MAX(ssn) > '5'",
    "SELECT id FROM users ORDER BY ssn",
    "SELECT LOWER(ssn) AS s FROM users",
    "SELECT CASE WHEN ssn IS NULL THEN 0 ELSE 1 END AS has_ssn FROM users",
    "SELECT id FROM users WHERE EXISTS (SELECT 1 FROM orders o WHERE o.user_id = users.id AND users.ssn = '1')",
    "SELECT id FROM users WHERE EXISTS (SELECT 1 FROM orders WHERE ssn = '1')",
    "SELECT t.x FROM (SELECT ssn AS x FROM users) t",
    "SELECT id FROM users UNION SELECT ssn FROM users",
    "SELECT amount + ssn FROM orders o JOIN users u ON o.user_id = u.id",
    'SELECT "ssn" FROM users',
])
def test_inaccessible_column_blocked(catalog, policy, sql):
    assert _blocked(sql, catalog, policy) == ["users.ssn"]


def test_accessible_columns_pass(catalog, policy):
    enforce_column_access(
        "SELECT u.id, u.email, u.phone FROM users u WHERE u.email = 'ssn' ORDER BY u.id",
        catalog, policy,
    )


# ── 3. Output aliases ────────────────────────────────────

def test_order_by_output_alias_is_not_the_table_column(catalog, policy):
    enforce_column_access("SELECT email AS ssn FROM users ORDER BY ssn", catalog, policy)


def test_alias_in_where_still_resolves_to_table_column(catalog, policy):
    assert _blocked("SELECT email AS ssn FROM users WHERE ssn = 'x'", catalog, policy) == ["users.ssn"]


def test_union_order_by_uses_last_segment_aliases(catalog, policy):
    # the final segment names its column `other`, so ORDER BY ssn is the table column
    sql = "SELECT email AS ssn FROM users UNION SELECT email AS other FROM users ORDER BY ssn"
    assert _blocked(sql, catalog, policy) == ["users.ssn"]


def test_union_order_by_alias_of_last_segment(catalog, policy):
    sql = "SELECT email AS other FROM users UNION SELECT email AS ssn FROM users ORDER BY ssn"
    enforce_column_access(sql, catalog, policy)


# ── 4. Ambiguous references: deny wins ───────────────────

def _two_table_policy(denied_on: str):
    record = PolicyRecord(
        id="p", organization_id="acme", database_connection_id="w", role="analyst",
        table_permissions=[
            TablePermission(
                table_name=name,
                column_permissions=[ColumnPermission(column_name="secret", accessible=name != denied_on)],
            )
            for name in ("a", "b")
        ],
    )
    principal = Principal(id="u-1", role="analyst", organization_id="acme")
    return compile_policy(principal, "w", InMemoryPolicyStore([record]))


_AB_CATALOG = Catalog(tables=[
    Table(name="a", columns=[Column(name="id"), Column(name="secret")]),
    Table(name="b", columns=[Column(name="id"), Column(name="secret")]),
])


@pytest.mark.parametrize("denied_on", ["a", "b"])
@pytest.mark.parametrize("with_catalog", [True, False])
def test_ambiguous_column_deny_wins(denied_on, with_catalog):
    policy = _two_table_policy(denied_on)
    catalog = _AB_CATALOG if with_catalog else None
    with pytest.raises(ColumnAccessBlocked) as exc:
        enforce_column_access("SELECT secret FROM a JOIN b ON a.id = b.id", catalog, policy)
    assert exc.value.columns == [f"{denied_on}.secret"]


def test_qualified_reference_checks_only_its_table():
    policy = _two_table_policy("b")
    enforce_column_access("SELECT a.secret FROM a JOIN b ON a.id = b.id", _AB_CATALOG, policy)


def test_catalog_attributes_column_to_owning_table():
    record = PolicyRecord(
        id="p", organization_id="acme", database_connection_id="w", role="analyst",
        table_permissions=[
            TablePermission(table_name="a", column_permissions=[ColumnPermission(column_name="note", accessible=False)]),
            TablePermission(table_name="b"),
        ],
    )
    policy = compile_policy(Principal(id="u", role="analyst", organization_id="acme"), "w", InMemoryPolicyStore([record]))
    catalog = Catalog(tables=[
        Table(name="a", columns=[Column(name="id")]),
        Table(name="b", columns=[Column(name="id"), Column(name="note")]),
    ])
    # only `b` has `note`, so the reference is not attributed to `a`
    enforce_column_access("SELECT note FROM a JOIN b ON a.id = b.id", catalog, policy)


# ── 5. Whole-row values ──────────────────────────────────

@pytest.mark.parametrize("sql", [
    "SELECT row_to_json(u.*) FROM users u",
    "SELECT to_jsonb(u) FROM users u",
    "SELECT u FROM users u",
    "SELECT json_agg(users) FROM users",
    "SELECT o.id FROM orders o JOIN users u ON o.user_id = u.id WHERE to_jsonb(u)::text LIKE '%1%'",
    "SELECT id FROM orders WHERE EXISTS (SELECT 1 FROM users u WHERE row_to_json(u.*) IS NOT NULL)",
])
@pytest.mark.parametrize("with_catalog", [True, False])
def test_whole_row_value_blocked(catalog, policy, sql, with_catalog):
    with pytest.raises(SelectStarBlocked) as exc:
        enforce_column_access(sql, catalog if with_catalog else None, policy)
    assert exc.value.tables == ["users"]


@pytest.mark.parametrize("sql", [
    "SELECT row_to_json(o.*) FROM orders o",
    "SELECT to_jsonb(p) FROM products p",
    "SELECT to_jsonb(t) FROM (SELECT id, email FROM users) t",
])
def test_whole_row_value_allowed(catalog, policy, sql):
    enforce_column_access(sql, catalog, policy)


# ── 6. FROM column-alias lists ───────────────────────────

@pytest.mark.parametrize("sql", [
    "SELECT u.e FROM users u(a, b, c, d, e)",
    "SELECT e FROM users AS u(a, b, c, d, e)",
    "SELECT u.id FROM users u(a, b, c, d, e) WHERE e = '1'",
])
def test_renamed_inaccessible_column_blocked(catalog, policy, sql):
    assert _blocked(sql, catalog, policy) == ["users.ssn"]


def test_renamed_columns_checked_under_real_names(catalog, policy):
    # ssn here is the renamed id column; email is renamed to id
    enforce_column_access("SELECT u.ssn, u.id FROM users u(ssn, id)", catalog, policy)


def test_rename_without_catalog_fails_closed(policy):
    assert _blocked("SELECT u.id FROM users u(ssn, id)", None, policy) == ["users.ssn"]


# ── 7. String-literal aliases ────────────────────────────

@pytest.mark.parametrize("sql", [
    "SELECT ssn 'x' FROM users",
    "SELECT u.ssn 'x' FROM users u",
    "SELECT id, ssn 'tax id' FROM users",
])
def test_column_before_string_alias_blocked(catalog, policy, sql):
    assert _blocked(sql, catalog, policy) == ["users.ssn"]


def test_typed_literal_is_not_a_column(catalog, policy):
    enforce_column_access("SELECT id FROM users WHERE created_at > DATE '2026-01-01'", catalog, policy)


# ── 8. Keyword-named columns ─────────────────────────────

def _keyword_policy(names):
    record = PolicyRecord(
        id="p", organization_id="acme", database_connection_id="w", role="analyst",
        table_permissions=[TablePermission(
            table_name="events",
            column_permissions=[ColumnPermission(column_name=n, accessible=False) for n in names],
        )],
    )
    principal = Principal(id="u-1", role="analyst", organization_id="acme")
    return compile_policy(principal, "w", InMemoryPolicyStore([record]))


@pytest.mark.parametrize("name", ["range", "rows", "filter", "partition", "current", "if", "following"])
@pytest.mark.parametrize("template", [
    "SELECT {c} FROM events",
    "SELECT id FROM events WHERE {c} > 0",
    "SELECT id FROM events ORDER BY {c}",
])
def test_keyword_named_column_blocked(name, template):
    policy = _keyword_policy([name])
    with pytest.raises(ColumnAccessBlocked) as exc:
        enforce_column_access(template.format(c=name), None, policy)
    assert exc.value.columns == [f"events.{name}"]


def test_window_frame_is_not_a_column_reference(catalog, policy):
    enforce_column_access(
        "SELECT id, COUNT(*) OVER (PARTITION BY id ORDER BY created_at "
        "ROWS BETWEEN UNBOUNDED PRECEDING AND CURRENT ROW) AS n FROM users",
        catalog, policy,
    )
