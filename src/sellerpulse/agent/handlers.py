"""Data-retrieval tools exposed to the model.

Each tool pairs a JSON schema (what the model sees) with a pydantic argument
model (what the handler receives). Handlers query the tenant data source and
return ``{"success": True, "data": ...}`` payloads.
"""

from datetime import date
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .dates import FILTER_TYPES, DateRange, month_range, range_for_filter
from .tools import ExecutionContext, ToolExecutionError, ToolRegistry, ToolSpec


class _Args(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SalesArgs(_Args):
    filter_type: Optional[str] = Field(None, alias="filterType")
    sku: Optional[str] = None
    product_name: Optional[str] = Field(None, alias="productName")
    category: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    platform: Optional[str] = None
    start_date: Optional[date] = Field(None, alias="startDate")
    end_date: Optional[date] = Field(None, alias="endDate")


class RegionalSalesArgs(_Args):
    filter_type: Optional[str] = Field(None, alias="filterType")
    sku: Optional[str] = None
    product_category: Optional[str] = Field(None, alias="productCategory")
    state: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    platform: Optional[str] = None


class OrdersArgs(_Args):
    filter_type: Optional[str] = Field(None, alias="filterType")
    sku: Optional[str] = None
    platform: Optional[str] = None
    state: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    start_month: Optional[str] = Field(None, alias="startMonth", pattern=r"^\d{4}-\d{2}$")
    end_month: Optional[str] = Field(None, alias="endMonth", pattern=r"^\d{4}-\d{2}$")


class InventoryArgs(_Args):
    sku: Optional[str] = None
    category: Optional[str] = None
    product: Optional[str] = None
    country: Optional[str] = None
    platform: Optional[str] = None


class StockStatusArgs(_Args):
    country: Optional[str] = None
    platform: Optional[str] = None


class AdSalesArgs(_Args):
    filter_type: Optional[str] = Field(None, alias="filterType")
    platform: Optional[str] = None
    country: Optional[str] = None
    sku: Optional[str] = None
    start_month: Optional[str] = Field(None, alias="startMonth", pattern=r"^\d{4}-\d{2}$")
    end_month: Optional[str] = Field(None, alias="endMonth", pattern=r"^\d{4}-\d{2}$")


class _Where:
    """Accumulates parameterised WHERE conditions."""

    def __init__(self) -> None:
        self.conditions: List[str] = []
        self.params: List[Any] = []

    def eq(self, column: str, value: Optional[str]) -> "_Where":
        if value:
            self.conditions.append(f"{column} = ?")
            self.params.append(value)
        return self

    def like(self, column: str, value: Optional[str]) -> "_Where":
        if value:
            self.conditions.append(f"LOWER({column}) LIKE ?")
            self.params.append(f"%{value.lower()}%")
        return self

    def any_of(self, column: str, csv: Optional[str]) -> "_Where":
        values = [v.strip() for v in (csv or "").split(",") if v.strip()]
        if values:
            self.conditions.append(f"{column} IN ({', '.join('?' for _ in values)})")
            self.params.extend(values)
        return self

    def between(self, column: str, span: DateRange) -> "_Where":
        self.conditions.append(f"{column} >= ? AND {column} <= ?")
        self.params.extend([span[0].isoformat(), span[1].isoformat()])
        return self

    def months(self, column: str, span: DateRange) -> "_Where":
        self.conditions.append(f"{column} >= ? AND {column} <= ?")
        self.params.extend([span[0].strftime("%Y-%m"), span[1].strftime("%Y-%m")])
        return self

    def raw(self, condition: str) -> "_Where":
        self.conditions.append(condition)
        return self

    def clause(self) -> str:
        return " AND ".join(self.conditions) if self.conditions else "1=1"


def _date_range_payload(span: DateRange) -> Dict[str, str]:
    return {"start": span[0].isoformat(), "end": span[1].isoformat()}


def _sales_range(args: SalesArgs, today: date) -> DateRange:
    if args.start_date and args.end_date:
        if args.end_date < args.start_date:
            raise ToolExecutionError("endDate must not be before startDate")
        return args.start_date, args.end_date
    return range_for_filter(args.filter_type, today)


async def get_sales_data(args: SalesArgs, context: ExecutionContext) -> Dict[str, Any]:
    source = await context.data_source()
    span = _sales_range(args, context.today)
    where = (
        _Where()
        .any_of("sku", args.sku)
        .like("product_name", args.product_name)
        .eq("product_category", args.category)
        .eq("city", args.city)
        .eq("state", args.state)
        .like("country", args.country)
        .like("platform", args.platform)
        .between("purchase_date", span)
    )
    rows = await source.fetch_all(
        f"""
        SELECT
          purchase_date, purchase_hour, order_status, sku, quantity,
          total_sales, item_price, city, state,
          ROUND(total_sales / NULLIF(quantity, 0), 2) AS aov,
          product_category, product_name
        FROM orders
        WHERE {where.clause()}
        ORDER BY purchase_date DESC
        """,
        where.params,
    )
    return {
        "success": True,
        "data": rows,
        "dateRange": _date_range_payload(span),
        "filters": args.model_dump(by_alias=True, exclude_none=True, mode="json"),
    }


async def get_regional_sales(args: RegionalSalesArgs, context: ExecutionContext) -> Dict[str, Any]:
    source = await context.data_source()
    span = range_for_filter(args.filter_type, context.today)
    where = (
        _Where()
        .any_of("sku", args.sku)
        .eq("product_category", args.product_category)
        .eq("state", args.state)
        .eq("city", args.city)
        .like("country", args.country)
        .like("platform", args.platform)
        .between("purchase_date", span)
    )
    rows = await source.fetch_all(
        f"""
        SELECT
          state,
          city,
          ROUND(SUM(total_sales), 2) AS totalSales,
          SUM(quantity) AS totalQuantity,
          COUNT(DISTINCT order_id) AS totalOrders
        FROM orders
        WHERE {where.clause()}
        GROUP BY state, city
        ORDER BY totalSales DESC
        """,
        where.params,
    )
    return {"success": True, "data": rows, "dateRange": _date_range_payload(span)}


def _month_span(args: Union[OrdersArgs, AdSalesArgs], today: date) -> DateRange:
    if args.start_month and args.end_month:
        try:
            return month_range(args.start_month, args.end_month)
        except ValueError as e:
            raise ToolExecutionError(str(e)) from e
    return range_for_filter(args.filter_type, today)


async def get_orders_data(args: OrdersArgs, context: ExecutionContext) -> Dict[str, Any]:
    source = await context.data_source()
    span = _month_span(args, context.today)
    where = (
        _Where()
        .any_of("sku", args.sku)
        .like("platform", args.platform)
        .eq("state", args.state)
        .eq("city", args.city)
        .like("country", args.country)
        .between("purchase_date", span)
    )
    rows = await source.fetch_all(
        f"""
        SELECT
          purchase_date AS date,
          SUM(quantity) AS totalQuantity,
          ROUND(SUM(total_sales), 2) AS totalSales,
          COUNT(DISTINCT order_id) AS orderCount
        FROM orders
        WHERE {where.clause()}
        GROUP BY purchase_date
        ORDER BY purchase_date
        """,
        where.params,
    )

    items = []
    totals = {"totalQuantity": 0, "totalSales": 0.0, "totalOrders": 0}
    for row in rows:
        count = int(row["orderCount"] or 0)
        sales = float(row["totalSales"] or 0)
        items.append({**row, "aov": round(sales / count, 2) if count else 0})
        totals["totalQuantity"] += int(row["totalQuantity"] or 0)
        totals["totalSales"] = round(totals["totalSales"] + sales, 2)
        totals["totalOrders"] += count

    return {
        "success": True,
        "data": {"items": items, "totals": totals, "dateRange": _date_range_payload(span)},
    }


async def get_inventory_data(args: InventoryArgs, context: ExecutionContext) -> Dict[str, Any]:
    source = await context.data_source()
    where = (
        _Where()
        .like("sku", args.sku)
        .like("product_category", args.category)
        .like("product_name", args.product)
        .like("country", args.country)
        .like("platform", args.platform)
    )
    rows = await source.fetch_all(
        f"SELECT * FROM inventory WHERE {where.clause()} ORDER BY sku", where.params
    )
    return {"success": True, "data": rows, "totalItems": len(rows)}


def _stock_query(condition: str) -> Any:
    async def handler(args: StockStatusArgs, context: ExecutionContext) -> Dict[str, Any]:
        source = await context.data_source()
        where = _Where().raw(condition).like("platform", args.platform).like("country", args.country)
        rows = await source.fetch_all(
            f"SELECT * FROM inventory WHERE {where.clause()} ORDER BY sku", where.params
        )
        return {"success": True, "data": rows, "totalItems": len(rows)}

    return handler


def _ad_metrics(ad_sales: float, ad_spend: float, revenue: float) -> Dict[str, float]:
    """ACOS and TACOS are percentages; ratios with a zero denominator are 0."""
    return {
        "totalAdSales": round(ad_sales, 2),
        "totalAdSpend": round(ad_spend, 2),
        "totalRevenue": round(revenue, 2),
        "ACOS": round(ad_spend / ad_sales * 100, 2) if ad_sales > 0 else 0.0,
        "TACOS": round(ad_spend / revenue * 100, 2) if revenue > 0 else 0.0,
        "ROAS": round(ad_sales / ad_spend, 2) if ad_spend > 0 else 0.0,
        "organicRevenue": round(revenue - ad_sales, 2),
    }


async def get_ad_sales_spend(args: AdSalesArgs, context: ExecutionContext) -> Dict[str, Any]:
    source = await context.data_source()
    span = _month_span(args, context.today)
    where = (
        _Where()
        .any_of("sku", args.sku)
        .like("platform", args.platform)
        .like("country", args.country)
        .months("year_month", span)
    )
    rows = await source.fetch_all(
        f"""
        SELECT
          year_month AS yearMonth,
          SUM(ad_sales) AS adSales,
          SUM(ad_spend) AS adSpend,
          SUM(total_gross_sales) AS revenue
        FROM ad_sales
        WHERE {where.clause()}
        GROUP BY year_month
        ORDER BY year_month
        """,
        where.params,
    )

    by_month = []
    totals = [0.0, 0.0, 0.0]
    for row in rows:
        sums = [float(row[key] or 0) for key in ("adSales", "adSpend", "revenue")]
        by_month.append({"yearMonth": row["yearMonth"], **_ad_metrics(*sums)})
        totals = [t + s for t, s in zip(totals, sums)]

    return {
        "success": True,
        "data": {"totals": _ad_metrics(*totals), "byMonth": by_month},
        "dateRange": _date_range_payload(span),
    }


_FILTER_TYPE_PROP = {
    "type": "string",
    "enum": list(FILTER_TYPES),
    "description": (
        "Date filter type. 'currentmonth' = current month, 'previousmonth' = previous month, "
        "'currentyear' = year to date, 'lastyear' = last full year"
    ),
}


def _str_prop(description: str, **extra: Any) -> Dict[str, Any]:
    return {"type": "string", "description": description, **extra}


def _object(properties: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "object", "properties": properties}


_STOCK_PROPS = {
    "country": _str_prop("Filter by country (partial match)"),
    "platform": _str_prop("Filter by platform (partial match)"),
}

SALES_TOOLS = [
    ToolSpec(
        name="get_sales_data",
        description=(
            "Get order-level sales data. Returns purchase dates, SKUs, quantities, total sales, "
            "product names, categories, cities, states and AOV (Average Order Value). Supports "
            "filtering by SKU, product name, category, city, state, country, platform and date ranges."
        ),
        parameters=_object(
            {
                "filterType": _FILTER_TYPE_PROP,
                "sku": _str_prop("Filter by SKU (comma-separated for multiple)"),
                "productName": _str_prop("Filter by product name (partial match)"),
                "category": _str_prop("Filter by product category"),
                "city": _str_prop("Filter by city"),
                "state": _str_prop("Filter by state"),
                "country": _str_prop("Filter by country"),
                "platform": _str_prop("Filter by platform"),
                "startDate": _str_prop(
                    "Custom start date (YYYY-MM-DD). Use with endDate for custom range", format="date"
                ),
                "endDate": _str_prop(
                    "Custom end date (YYYY-MM-DD). Use with startDate for custom range", format="date"
                ),
            }
        ),
        args_model=SalesArgs,
        handler=get_sales_data,
    ),
    ToolSpec(
        name="get_regional_sales",
        description=(
            "Get regional sales aggregated by state and city. Returns total sales, quantities "
            "and order counts grouped by location."
        ),
        parameters=_object(
            {
                "filterType": _FILTER_TYPE_PROP,
                "sku": _str_prop("Filter by SKU (comma-separated for multiple)"),
                "productCategory": _str_prop("Filter by product category"),
                "state": _str_prop("Filter by state"),
                "city": _str_prop("Filter by city"),
                "country": _str_prop("Filter by country"),
                "platform": _str_prop("Filter by platform"),
            }
        ),
        args_model=RegionalSalesArgs,
        handler=get_regional_sales,
    ),
    ToolSpec(
        name="get_orders_data",
        description=(
            "Get a daily breakdown of orders with total quantity, total sales, order count and "
            "AOV. Supports filtering by SKU, platform, state, city, country and date ranges."
        ),
        parameters=_object(
            {
                "filterType": _FILTER_TYPE_PROP,
                "sku": _str_prop("Filter by SKU (comma-separated for multiple)"),
                "platform": _str_prop("Filter by platform (partial match)"),
                "state": _str_prop("Filter by state"),
                "city": _str_prop("Filter by city"),
                "country": _str_prop("Filter by country (partial match)"),
                "startMonth": _str_prop("Start month in YYYY-MM format (for custom range)"),
                "endMonth": _str_prop("End month in YYYY-MM format (for custom range)"),
            }
        ),
        args_model=OrdersArgs,
        handler=get_orders_data,
    ),
]

INVENTORY_TOOLS = [
    ToolSpec(
        name="get_inventory_data",
        description=(
            "Get inventory data. Returns SKU, fulfillable quantity, product name, category, "
            "country, platform, stock status, days of supply and inventory value."
        ),
        parameters=_object(
            {
                "sku": _str_prop("Filter by SKU (partial match)"),
                "category": _str_prop("Filter by product category (partial match)"),
                "product": _str_prop("Filter by product name (partial match)"),
                "country": _str_prop("Filter by country (partial match)"),
                "platform": _str_prop("Filter by platform (partial match)"),
            }
        ),
        args_model=InventoryArgs,
        handler=get_inventory_data,
    ),
    ToolSpec(
        name="get_inventory_overstock",
        description="Get overstock items: stock status 'Overstock' with at least 90 days of supply.",
        parameters=_object(_STOCK_PROPS),
        args_model=StockStatusArgs,
        handler=_stock_query("stock_status = 'Overstock' AND days_of_supply >= 90"),
    ),
    ToolSpec(
        name="get_inventory_understock",
        description="Get understock items: stock status 'Understock' with at most 30 days of supply.",
        parameters=_object(_STOCK_PROPS),
        args_model=StockStatusArgs,
        handler=_stock_query("stock_status = 'Understock' AND days_of_supply <= 30"),
    ),
    ToolSpec(
        name="get_inventory_out_of_stock",
        description="Get active SKUs that are out of stock (no fulfillable units left).",
        parameters=_object(_STOCK_PROPS),
        args_model=StockStatusArgs,
        handler=_stock_query(
            "stock_status = 'Understock' AND days_of_supply = 0 AND fulfillable_quantity = 0"
        ),
    ),
]

ADVERTISING_TOOLS = [
    ToolSpec(
        name="get_ad_sales_spend",
        description=(
            "Get advertising performance: ad sales, ad spend, total revenue, ACOS (Advertising Cost "
            "of Sales, %), TACOS (Total Advertising Cost of Sales, %), ROAS (Return on Ad Spend) and "
            "organic revenue, overall and per month. Supports filtering by platform, country, SKU "
            "and date ranges."
        ),
        parameters=_object(
            {
                "filterType": _FILTER_TYPE_PROP,
                "platform": _str_prop("Filter by platform (partial match)"),
                "country": _str_prop("Filter by country (partial match)"),
                "sku": _str_prop("Filter by SKU (comma-separated for multiple)"),
                "startMonth": _str_prop("Start month in YYYY-MM format (for custom range)"),
                "endMonth": _str_prop("End month in YYYY-MM format (for custom range)"),
            }
        ),
        args_model=AdSalesArgs,
        handler=get_ad_sales_spend,
    ),
]


def build_registry() -> ToolRegistry:
    """Registry with every built-in data tool."""
    return ToolRegistry([*SALES_TOOLS, *INVENTORY_TOOLS, *ADVERTISING_TOOLS])
