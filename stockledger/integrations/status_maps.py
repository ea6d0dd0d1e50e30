"""
Explicit marketplace status vocabularies.

Each table is the complete mapping for one marketplace. Anything not listed
maps to OrderStatus.UNKNOWN; there is no default to an arbitrary status.
"""

from typing import Dict

from stockledger.core.enums import OrderStatus

TRENDYOL_STATUS_MAP: Dict[str, OrderStatus] = {
    "Created": OrderStatus.PENDING,
    "Awaiting": OrderStatus.PENDING,
    "Picking": OrderStatus.PROCESSING,
    "Invoiced": OrderStatus.PROCESSING,
    "Shipped": OrderStatus.SHIPPED,
    "UnDelivered": OrderStatus.SHIPPED,
    "Delivered": OrderStatus.DELIVERED,
    "Returned": OrderStatus.RETURNED,
    "Cancelled": OrderStatus.CANCELLED,
    "UnSupplied": OrderStatus.CANCELLED,
}

HEPSIBURADA_STATUS_MAP: Dict[str, OrderStatus] = {
    "Created": OrderStatus.PENDING,
    "Approved": OrderStatus.PROCESSING,
    "Shipped": OrderStatus.SHIPPED,
    "Delivered": OrderStatus.DELIVERED,
    "Cancelled": OrderStatus.CANCELLED,
    "Returned": OrderStatus.RETURNED,
}

# Payloads that already speak our vocabulary (internal tools, generic webhooks)
CANONICAL_STATUS_MAP: Dict[str, OrderStatus] = {
    status.value: status for status in OrderStatus if status is not OrderStatus.UNKNOWN
}

STATUS_MAPS: Dict[str, Dict[str, OrderStatus]] = {
    "trendyol": TRENDYOL_STATUS_MAP,
    "hepsiburada": HEPSIBURADA_STATUS_MAP,
}


def get_status_map(marketplace: str) -> Dict[str, OrderStatus]:
    return STATUS_MAPS.get(marketplace.lower(), CANONICAL_STATUS_MAP)
