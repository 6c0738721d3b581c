import asyncio
import logging
import re
import sqlite3
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, List, Sequence

from ..models import RequestContext

logger = logging.getLogger(__name__)

_TENANT_NAME = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS orders (
      order_id TEXT NOT NULL,
      purchase_date TEXT NOT NULL,
      purchase_hour INTEGER NOT NULL DEFAULT 0,
      order_status TEXT NOT NULL,
      sku TEXT NOT NULL,
      product_name TEXT NOT NULL,
      product_category TEXT NOT NULL,
      quantity INTEGER NOT NULL,
      item_price REAL NOT NULL,
      total_sales REAL NOT NULL,
      city TEXT NULL,
      state TEXT NULL,
      country TEXT NOT NULL DEFAULT 'US',
      platform TEXT NOT NULL DEFAULT 'Amazon'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory (
      sku TEXT PRIMARY KEY,
      product_name TEXT NOT NULL,
      product_category TEXT NOT NULL,
      country TEXT NOT NULL DEFAULT 'US',
      platform TEXT NOT NULL DEFAULT 'Amazon',
      fulfillable_quantity INTEGER NOT NULL,
      days_of_supply INTEGER NOT NULL,
      stock_status TEXT NOT NULL,
      inventory_value REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ad_sales (
      year_month TEXT NOT NULL,
      sku TEXT NOT NULL,
      country TEXT NOT NULL DEFAULT 'US',
      platform TEXT NOT NULL DEFAULT 'Amazon',
      ad_sales REAL NOT NULL,
      ad_spend REAL NOT NULL,
      total_gross_sales REAL NOT NULL
    )
    """,
)


class DataSourceError(Exception):
    """The caller's data source could not be resolved."""


class TenantDataSource:
    """Handle on one tenant's SQLite database.

    A fresh connection is opened per query in a worker thread, so concurrent
    tool executions never share a connection.
    """

    def __init__(self, tenant: str, path: Path) -> None:
        self.tenant = tenant
        self.path = path

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    def _fetch_all(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(sql, tuple(params))
            return [dict(row) for row in cur.fetchall()]
        finally:
            conn.close()

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._fetch_all, sql, params)


class DataSourceManager:
    """Resolves a request's tenant to its data source (one SQLite file per tenant)."""

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = data_dir
        self._sources: Dict[str, TenantDataSource] = {}

    def path_for(self, tenant: str) -> Path:
        if not _TENANT_NAME.match(tenant):
            raise DataSourceError(f"Invalid database name: {tenant!r}")
        return self._data_dir / f"{tenant}.db"

    async def acquire(self, request_context: RequestContext) -> TenantDataSource:
        tenant = request_context.tenant
        if not tenant:
            raise DataSourceError("Database name not found in request")
        source = self._sources.get(tenant)
        if source is not None:
            return source
        path = self.path_for(tenant)
        if not path.exists():
            raise DataSourceError(f"No database found for {tenant}")
        source = TenantDataSource(tenant, path)
        self._sources[tenant] = source
        logger.info("Data source ready for tenant %s", tenant)
        return source


def init_tenant_database(path: Path, today: date, seed: bool = True) -> None:
    """Create tables if needed and insert demo data when the orders table is empty."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    cur = conn.cursor()
    try:
        for statement in SCHEMA:
            cur.execute(statement)
        cur.execute("SELECT COUNT(*) FROM orders")
        row = cur.fetchone()
        if seed and (row[0] if row else 0) == 0:
            _insert_demo_data(cur, today)
        conn.commit()
    finally:
        cur.close()
        conn.close()


def _insert_demo_data(cur: sqlite3.Cursor, today: date) -> None:
    """Insert orders across the current month, previous month and last year, plus stock and ad rows."""
    this_month = today.replace(day=1)
    prev_month = (this_month - timedelta(days=1)).replace(day=1)
    last_year = date(today.year - 1, 6, 1)

    products = {
        "ECHO-DOT-5": ("Echo Dot 5th Gen", "Electronics", 49.99),
        "YOGA-MAT-PRO": ("Pro Yoga Mat", "Sports", 34.50),
        "COFFEE-1KG": ("Arabica Coffee Beans 1kg", "Grocery", 21.00),
        "LED-STRIP-5M": ("LED Light Strip 5m", "Home", 18.75),
    }
    placements = [
        (prev_month, 2, "ECHO-DOT-5", 3, "Austin", "TX", "Shipped"),
        (prev_month, 5, "YOGA-MAT-PRO", 2, "Seattle", "WA", "Shipped"),
        (prev_month, 9, "COFFEE-1KG", 6, "Austin", "TX", "Shipped"),
        (prev_month, 14, "ECHO-DOT-5", 1, "Denver", "CO", "Shipped"),
        (prev_month, 20, "LED-STRIP-5M", 4, "Seattle", "WA", "Cancelled"),
        (prev_month, 25, "COFFEE-1KG", 2, "Miami", "FL", "Shipped"),
        (this_month, 0, "YOGA-MAT-PRO", 1, "Denver", "CO", "Pending"),
        (this_month, 0, "ECHO-DOT-5", 2, "Austin", "TX", "Shipped"),
        (last_year, 10, "LED-STRIP-5M", 5, "Miami", "FL", "Shipped"),
        (last_year, 40, "ECHO-DOT-5", 2, "Seattle", "WA", "Shipped"),
    ]

    orders = []
    for n, (month_start, offset, sku, qty, city, state, status) in enumerate(placements, start=1):
        name, category, price = products[sku]
        purchased = month_start + timedelta(days=offset)
        orders.append(
            (
                f"114-{1000 + n}",
                purchased.isoformat(),
                8 + n % 12,
                status,
                sku,
                name,
                category,
                qty,
                price,
                round(qty * price, 2),
                city,
                state,
            )
        )
    cur.executemany(
        """
        INSERT INTO orders
          (order_id, purchase_date, purchase_hour, order_status, sku, product_name,
           product_category, quantity, item_price, total_sales, city, state)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        orders,
    )

    inventory = [
        ("ECHO-DOT-5", "Echo Dot 5th Gen", "Electronics", 12, 8, "Understock", 599.88),
        ("YOGA-MAT-PRO", "Pro Yoga Mat", "Sports", 240, 150, "Overstock", 8280.00),
        ("COFFEE-1KG", "Arabica Coffee Beans 1kg", "Grocery", 60, 45, "Healthy", 1260.00),
        ("LED-STRIP-5M", "LED Light Strip 5m", "Home", 0, 0, "Understock", 0.0),
    ]
    cur.executemany(
        """
        INSERT OR REPLACE INTO inventory
          (sku, product_name, product_category, fulfillable_quantity, days_of_supply,
           stock_status, inventory_value)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        inventory,
    )

    month = "%Y-%m"
    ad_sales = [
        (prev_month.strftime(month), "ECHO-DOT-5", "Amazon", 150.00, 30.00, 199.96),
        (prev_month.strftime(month), "COFFEE-1KG", "Amazon", 84.00, 21.00, 168.00),
        (prev_month.strftime(month), "YOGA-MAT-PRO", "Walmart", 34.50, 15.00, 69.00),
        (this_month.strftime(month), "ECHO-DOT-5", "Amazon", 50.00, 20.00, 99.98),
    ]
    cur.executemany(
        """
        INSERT INTO ad_sales
          (year_month, sku, platform, ad_sales, ad_spend, total_gross_sales)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        ad_sales,
    )
