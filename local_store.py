#!/usr/bin/env python3
# Local persistence: settings, courier tracking, customer directory, expenses (SQLite)
import os, sqlite3, time, argparse, datetime as dt
from typing import List, Dict, Any, Optional

import dashboard_config as cfg

DB_PATH = cfg.DASHBOARD_DB_PATH
MIN_PHONE_LENGTH = 6


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def now_ms() -> int:
    return int(time.time() * 1000)


def connect(db_path: str = DB_PATH) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    init_db(conn)
    return conn


def init_db(conn: sqlite3.Connection):
    _ensure_settings_table(conn)
    _ensure_tracking_table(conn)
    _ensure_customer_table(conn)
    _ensure_expense_table(conn)
    conn.commit()


def _ensure_settings_table(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS settings (
      key TEXT PRIMARY KEY,
      value TEXT,
      modified_utc TEXT
    )
    """)


def _ensure_tracking_table(conn: sqlite3.Connection):
    """Courier annotations the storefront cannot hold itself."""
    conn.execute("""
    CREATE TABLE IF NOT EXISTS local_tracking (
      order_id TEXT PRIMARY KEY,
      courier_tracking_code TEXT,
      courier_provider TEXT,
      courier_status TEXT,
      modified_utc TEXT
    )
    """)


def _ensure_customer_table(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS customers (
      phone TEXT PRIMARY KEY,
      name TEXT,
      email TEXT,
      address TEXT,
      avatar TEXT,
      order_count INTEGER NOT NULL DEFAULT 0,
      total_spent NUMERIC NOT NULL DEFAULT 0,
      created_utc TEXT,
      modified_utc TEXT
    )
    """)


def _ensure_expense_table(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS expenses (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      amount NUMERIC NOT NULL DEFAULT 0,
      category TEXT,
      description TEXT,
      created_ms INTEGER NOT NULL
    )
    """)


# ========== SETTINGS ==========

def get_setting(conn: sqlite3.Connection, key: str) -> Optional[str]:
    """Raw stored text for `key`; decoding is the reader's job."""
    row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else None


def set_setting(conn: sqlite3.Connection, key: str, value: Optional[str]):
    conn.execute("""
        INSERT INTO settings (key, value, modified_utc) VALUES (?,?,?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value, modified_utc=excluded.modified_utc
    """, (key, value, iso_now()))
    conn.commit()


# ========== COURIER TRACKING ==========

def upsert_tracking(
    conn: sqlite3.Connection,
    order_id: str,
    tracking_code: Optional[str],
    provider: Optional[str],
    status: Optional[str] = None,
):
    """Record a consignment for an order. A missing status keeps the stored one."""
    order_id = str(order_id or "").strip()
    if not order_id:
        raise ValueError("order id is required")
    conn.execute("""
        INSERT INTO local_tracking (order_id, courier_tracking_code, courier_provider, courier_status, modified_utc)
        VALUES (?,?,?,?,?)
        ON CONFLICT(order_id) DO UPDATE SET
            courier_tracking_code=COALESCE(NULLIF(excluded.courier_tracking_code,''), local_tracking.courier_tracking_code),
            courier_provider=COALESCE(NULLIF(excluded.courier_provider,''), local_tracking.courier_provider),
            courier_status=COALESCE(excluded.courier_status, local_tracking.courier_status),
            modified_utc=excluded.modified_utc
    """, (order_id, tracking_code, provider, status, iso_now()))
    conn.commit()


def list_tracking(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute("""
        SELECT order_id, courier_tracking_code, courier_provider, courier_status
        FROM local_tracking ORDER BY modified_utc
    """).fetchall()
    return [
        {
            "id": row["order_id"],
            "courier_tracking_code": row["courier_tracking_code"],
            "courier_provider": row["courier_provider"],
            "courier_status": row["courier_status"],
        }
        for row in rows
    ]


# ========== CUSTOMER DIRECTORY ==========

def _customer_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "phone": row["phone"],
        "name": row["name"] or "",
        "email": row["email"] or "",
        "address": row["address"] or "",
        "avatar": row["avatar"] or "",
        "orderCount": int(row["order_count"] or 0),
        "totalSpent": float(row["total_spent"] or 0),
    }


def upsert_customer(conn: sqlite3.Connection, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Register one order against a customer keyed by phone.

    Every call counts as one more order: order_count grows by one and the
    submitted total is added to total_spent in a single statement, so
    concurrent callers never lose an increment. Non-empty name, email,
    address and avatar replace the stored values.
    """
    phone = str(payload.get("phone") or "").strip()
    if len(phone) < MIN_PHONE_LENGTH:
        raise ValueError("A valid phone number is required")
    try:
        total = float(payload.get("total") or 0)
    except (TypeError, ValueError):
        total = 0.0
    now = iso_now()
    conn.execute("""
        INSERT INTO customers (phone, name, email, address, avatar, order_count, total_spent, created_utc, modified_utc)
        VALUES (?,?,?,?,?,1,?,?,?)
        ON CONFLICT(phone) DO UPDATE SET
            name=COALESCE(NULLIF(excluded.name,''), customers.name),
            email=COALESCE(NULLIF(excluded.email,''), customers.email),
            address=COALESCE(NULLIF(excluded.address,''), customers.address),
            avatar=COALESCE(NULLIF(excluded.avatar,''), customers.avatar),
            order_count=customers.order_count + 1,
            total_spent=customers.total_spent + excluded.total_spent,
            modified_utc=excluded.modified_utc
    """, (
        phone,
        (payload.get("name") or "").strip(),
        (payload.get("email") or "").strip(),
        (payload.get("address") or "").strip(),
        (payload.get("avatar") or "").strip(),
        total,
        now,
        now,
    ))
    conn.commit()
    row = conn.execute("SELECT * FROM customers WHERE phone=?", (phone,)).fetchone()
    return _customer_row(row)


def list_customers(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM customers ORDER BY modified_utc DESC, phone").fetchall()
    return [_customer_row(row) for row in rows]


# ========== EXPENSES ==========

def _expense_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": str(row["id"]),
        "amount": float(row["amount"] or 0),
        "category": row["category"] or "",
        "description": row["description"] or "",
        "timestamp": int(row["created_ms"]),
    }


def add_expense(conn: sqlite3.Connection, amount: Any, category: str = "", description: str = "") -> Dict[str, Any]:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValueError("amount must be a number")
    cur = conn.execute(
        "INSERT INTO expenses (amount, category, description, created_ms) VALUES (?,?,?,?)",
        (value, (category or "").strip(), (description or "").strip(), now_ms())
    )
    conn.commit()
    row = conn.execute("SELECT * FROM expenses WHERE id=?", (cur.lastrowid,)).fetchone()
    return _expense_row(row)


def list_expenses(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM expenses ORDER BY created_ms DESC, id DESC").fetchall()
    return [_expense_row(row) for row in rows]


def main():
    ap = argparse.ArgumentParser(description="Dashboard local store")
    ap.add_argument("--init", action="store_true", help="Create tables if missing")
    ap.add_argument("--db", default=DB_PATH, help="Path to SQLite DB")
    ap.add_argument("--add-expense", type=float, metavar="AMOUNT", help="Record an expense")
    ap.add_argument("--category", default="", help="Category for --add-expense")
    ap.add_argument("--description", default="", help="Description for --add-expense")
    ap.add_argument("--list-customers", action="store_true", help="Print the customer directory")
    args = ap.parse_args()

    conn = connect(args.db)

    if args.init:
        print("Initialized", os.path.abspath(args.db))

    if args.add_expense is not None:
        expense = add_expense(conn, args.add_expense, args.category, args.description)
        print("Recorded expense", expense["id"], expense["amount"])

    if args.list_customers:
        for c in list_customers(conn):
            print(f"{c['phone']}\t{c['name']}\t{c['orderCount']}\t{c['totalSpent']:.2f}")


if __name__ == "__main__":
    main()
