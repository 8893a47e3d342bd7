from contextlib import contextmanager
import psycopg
from psycopg.rows import dict_row
from .settings import DATABASE_URL

SCHEMA = """
CREATE TABLE IF NOT EXISTS payment_orders (
    idem_key          TEXT PRIMARY KEY,
    merchant_trade_no TEXT NOT NULL UNIQUE,
    request_hash      TEXT NOT NULL,
    amount            TEXT NOT NULL,
    currency          TEXT NOT NULL,
    status            TEXT NOT NULL CHECK (status IN ('PENDING', 'SUCCEEDED', 'FAILED')),
    pay_url           TEXT,
    attempts          INTEGER NOT NULL DEFAULT 1,
    last_error        TEXT,
    created_at        TIMESTAMPTZ NOT NULL,
    last_attempt_at   TIMESTAMPTZ NOT NULL
)
"""


@contextmanager
def get_conn(dsn: str = DATABASE_URL):
    conn = psycopg.connect(dsn, row_factory=dict_row)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_schema(dsn: str = DATABASE_URL):
    with get_conn(dsn) as conn:
        conn.execute(SCHEMA)
