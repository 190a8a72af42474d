"""Best-effort order push to an external kitchen display system.

The notification runs after a sale has been committed. A failure is logged
and reported back to the caller; it never undoes the sale.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Sequence

import requests

from . import log
from .data_manager import ConfigSettings, SaleItemRow, SaleRow


ORDERS_PATH = "/api/orders"


def _json_number(value: Decimal) -> int | float:
    return int(value) if value == value.to_integral_value() else float(value)


def build_order_payload(sale: SaleRow, items: Sequence[SaleItemRow]) -> Dict[str, Any]:
    """Return the JSON body the kitchen display expects for ``sale``."""

    return {
        "sale_number": sale.sale_number,
        "items": [
            {
                "product_name": item.product_name,
                "quantity": _json_number(item.quantity),
                "product_price": _json_number(item.product_price),
                "removed_ingredients": list(item.removed_ingredients),
                "combo_name": item.combo_name,
            }
            for item in items
        ],
        "total": _json_number(sale.total_amount),
        "payment_method": sale.payment_method,
        "customer_name": sale.customer_name,
    }


def notify_kitchen(settings: ConfigSettings, sale: SaleRow, items: Sequence[SaleItemRow]) -> bool:
    """POST a completed sale to ``<kds_url>/api/orders``.

    Returns:
        bool: ``True`` when the display accepted the order, ``False`` when the
            display is disabled, unconfigured or the request failed.
    """

    if not settings.kds_enabled:
        return False
    if not settings.kds_url:
        log.warning("Kitchen display enabled without a URL; sale %s not sent", sale.sale_number)
        return False

    url = f"{settings.kds_url}{ORDERS_PATH}"
    try:
        response = requests.post(url, json=build_order_payload(sale, items), timeout=settings.kds_timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        log.error("Kitchen display rejected sale %s: %s", sale.sale_number, exc)
        return False

    log.info("Sent sale %s to kitchen display at %s", sale.sale_number, url)
    return True
