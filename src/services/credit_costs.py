"""Credit cost catalog.

Costs live in the ``credit_costs`` table so operators can re-price actions
without a deploy. ``DEFAULT_CREDIT_COSTS`` is the catalog the schema migration
seeds; it is also used to seed test databases.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.credit import CreditCost

logger = logging.getLogger(__name__)

# Viewing, browsing, configuration and team management are free.
DEFAULT_CREDIT_COSTS: List[Dict[str, object]] = [
    {"action_key": "dashboard_view", "action_name": "View Dashboard", "credits": 0, "category": "command_center"},
    {"action_key": "orders_view", "action_name": "View Orders", "credits": 0, "category": "orders"},
    {"action_key": "order_create_manual", "action_name": "Create Manual Order", "credits": 50, "category": "orders"},
    {"action_key": "order_update_status", "action_name": "Update Order Status", "credits": 0, "category": "orders"},
    {"action_key": "menu_view", "action_name": "Menu View", "credits": 2, "category": "menus"},
    {"action_key": "menu_create", "action_name": "Create Menu", "credits": 100, "category": "menus"},
    {"action_key": "menu_edit", "action_name": "Edit Menu", "credits": 0, "category": "menus"},
    {"action_key": "menu_order_received", "action_name": "Order Received", "credits": 75, "category": "orders"},
    {"action_key": "menu_import_catalog", "action_name": "Import Catalog", "credits": 50, "category": "menus"},
    {"action_key": "wholesale_view", "action_name": "View Wholesale", "credits": 0, "category": "wholesale"},
    {"action_key": "wholesale_order_place", "action_name": "Place Wholesale Order", "credits": 100, "category": "wholesale"},
    {"action_key": "wholesale_order_receive", "action_name": "Receive Wholesale Order", "credits": 75, "category": "wholesale"},
    {"action_key": "coupon_create", "action_name": "Create Coupon", "credits": 20, "category": "coupons"},
    {"action_key": "pos_process_sale", "action_name": "Process POS Sale", "credits": 25, "category": "pos"},
    {"action_key": "product_add", "action_name": "Add Product", "credits": 10, "category": "inventory"},
    {"action_key": "product_bulk_import", "action_name": "Bulk Import Products", "credits": 50, "category": "inventory"},
    {"action_key": "stock_update", "action_name": "Update Stock", "credits": 3, "category": "inventory"},
    {"action_key": "customer_add", "action_name": "Add Customer", "credits": 5, "category": "customers"},
    {"action_key": "customer_import", "action_name": "Import Customers", "credits": 50, "category": "customers"},
    {"action_key": "send_sms", "action_name": "Send SMS", "credits": 25, "category": "crm"},
    {"action_key": "send_email", "action_name": "Send Email", "credits": 10, "category": "crm"},
    {"action_key": "invoice_create", "action_name": "Create Invoice", "credits": 50, "category": "invoices"},
    {"action_key": "invoice_send", "action_name": "Send Invoice", "credits": 25, "category": "invoices"},
    {"action_key": "purchase_order_create", "action_name": "Create Purchase Order", "credits": 30, "category": "operations"},
    {"action_key": "delivery_create", "action_name": "Create Delivery", "credits": 30, "category": "delivery"},
    {"action_key": "route_optimize", "action_name": "Optimize Route", "credits": 50, "category": "fleet"},
    {"action_key": "report_custom_generate", "action_name": "Generate Custom Report", "credits": 75, "category": "reports"},
    {"action_key": "forecast_run", "action_name": "Run Forecast", "credits": 75, "category": "analytics"},
]


class CreditCostCatalog:
    """Read access to configured action costs."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get_cost(self, action_key: str) -> int:
        """Cost of ``action_key``; unknown or inactive actions cost nothing."""
        query = select(CreditCost.credits).where(
            and_(CreditCost.action_key == action_key, CreditCost.is_active.is_(True))
        )
        cost: Optional[int] = (await self.db.execute(query)).scalar_one_or_none()
        if cost is None:
            logger.debug(f"No active credit cost for '{action_key}', treating as free")
            return 0
        return cost

    async def list_costs(self, category: Optional[str] = None) -> List[CreditCost]:
        query = select(CreditCost).where(CreditCost.is_active.is_(True))
        if category:
            query = query.where(CreditCost.category == category)
        result = await self.db.execute(query.order_by(CreditCost.category, CreditCost.action_key))
        return list(result.scalars().all())


async def seed_default_costs(db_session: AsyncSession) -> int:
    """Insert any default cost rows that are missing. Returns the number inserted."""
    existing = set((await db_session.execute(select(CreditCost.action_key))).scalars().all())
    inserted = 0
    for row in DEFAULT_CREDIT_COSTS:
        if row["action_key"] in existing:
            continue
        db_session.add(CreditCost(**row))
        inserted += 1
    await db_session.commit()
    logger.info(f"Seeded {inserted} default credit cost(s)")
    return inserted
