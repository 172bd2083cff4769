"""
Shared fixtures -- an in-memory SQLite warehouse matching policy_layer/catalog.yml.
"""
import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from src.db.connection import set_engine

_SCHEMA = [
    """CREATE TABLE users (
        id VARCHAR PRIMARY KEY, email VARCHAR, display_name VARCHAR,
        phone VARCHAR, ssn VARCHAR, created_at TIMESTAMP
    )""",
    """CREATE TABLE orders (
        id VARCHAR PRIMARY KEY, user_id VARCHAR REFERENCES users(id),
        owner_email VARCHAR, amount NUMERIC, status VARCHAR, created_at TIMESTAMP
    )""",
    "CREATE TABLE products (id VARCHAR PRIMARY KEY, name VARCHAR, category VARCHAR, price NUMERIC)",
    "CREATE TABLE salaries (id VARCHAR PRIMARY KEY, user_id VARCHAR, amount NUMERIC, paid_at DATE)",
]

_DATA = [
    "INSERT INTO users VALUES ('u-1', 'alice@example.com', 'Alice', '555-123-4567', '111-22-3333', '2026-01-05')",
    "INSERT INTO users VALUES ('u-2', 'bob@example.com', 'Bob', '555-987-6543', '444-55-6666', '2026-02-11')",
    "INSERT INTO orders VALUES ('o-1', 'u-1', 'alice@example.com', 10.5, 'paid', '2026-03-01')",
    "INSERT INTO orders VALUES ('o-2', 'u-2', 'bob@example.com', 20, 'paid', '2026-03-02')",
    "INSERT INTO orders VALUES ('o-3', 'u-1', 'alice@example.com', 5, 'refunded', '2026-03-03')",
    "INSERT INTO products VALUES ('p-1', 'Widget', 'tools', 9.99)",
    "INSERT INTO salaries VALUES ('s-1', 'u-1', 5000, '2026-03-31')",
]


@pytest.fixture
def warehouse():
    """Seeded SQLite engine installed as the shared engine for the test."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    with engine.begin() as conn:
        for stmt in _SCHEMA + _DATA:
            conn.execute(text(stmt))
    set_engine(engine)
    yield engine
    set_engine(None)
    engine.dispose()
