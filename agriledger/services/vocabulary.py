"""Names shared by the catalog, the ledger and the provenance resolver.

Glossary:
- Status: lifecycle state stored on a batch.
- Event type: kind of action recorded in the event log.
- Role: the kind of party holding a batch (farmer, distributor, ...).
"""

from __future__ import annotations

from typing import Dict, Tuple

# Lifecycle statuses
HARVESTED = "Harvested"
IN_WAREHOUSE = "In Warehouse"
IN_TRANSIT = "In Transit"
PENDING_DELIVERY = "Pending Delivery"
IN_SHOP = "In Shop"
SOLD = "Sold"
CONSUMED = "Consumed"
RETURNED = "Returned"

LIFECYCLE_STATUSES: Tuple[str, ...] = (
    HARVESTED,
    IN_WAREHOUSE,
    IN_TRANSIT,
    PENDING_DELIVERY,
    IN_SHOP,
    SOLD,
    CONSUMED,
    RETURNED,
)

STATUS_DESCRIPTIONS: Dict[str, str] = {
    HARVESTED: "Freshly harvested at the farm",
    IN_WAREHOUSE: "Held in a distributor warehouse",
    IN_TRANSIT: "On the road with a transporter",
    PENDING_DELIVERY: "Ordered; waiting for delivery to be confirmed",
    IN_SHOP: "Available on a retail shelf",
    SOLD: "Fully sold; nothing left to draw",
    CONSUMED: "Bought by an end consumer",
    RETURNED: "Quantity handed back to the parent batch",
}

# Event types
EVT_HARVEST = "Harvest"
EVT_FERTILIZER = "Fertilizer Applied"
EVT_PESTICIDE = "Pesticide Applied"
EVT_IRRIGATION = "Irrigation"
EVT_QUALITY_CHECK = "Quality Check"
EVT_SPLIT = "Split"
EVT_TRANSFERRED = "Transferred"
EVT_SOLD = "Sold"
EVT_RETURNED = "Returned"
EVT_SHIPMENT_ASSIGNED = "Shipment Assigned"
EVT_PICKED_UP = "Picked Up"
EVT_IN_TRANSIT = "In Transit"
EVT_DELIVERED = "Delivered"
EVT_RECEIVED = "Received"

EVENT_TYPE_DESCRIPTIONS: Dict[str, str] = {
    EVT_HARVEST: "Batch harvested at the farm",
    EVT_FERTILIZER: "Fertilizer applied to the crop",
    EVT_PESTICIDE: "Pesticide applied to the crop",
    EVT_IRRIGATION: "Crop irrigated",
    EVT_QUALITY_CHECK: "Quality inspection performed",
    EVT_SPLIT: "Batch split into smaller batches",
    EVT_TRANSFERRED: "Whole batch changed hands",
    EVT_SOLD: "Quantity sold from the batch",
    EVT_RETURNED: "Batch returned to its previous holder",
    EVT_SHIPMENT_ASSIGNED: "Transporter accepted the shipment",
    EVT_PICKED_UP: "Transporter picked up the goods",
    EVT_IN_TRANSIT: "Goods are on the road",
    EVT_DELIVERED: "Goods delivered to the buyer",
    EVT_RECEIVED: "Buyer confirmed receipt",
}

# Roles
ROLE_FARMER = "FARMER"
ROLE_DISTRIBUTOR = "DISTRIBUTOR"
ROLE_TRANSPORTER = "TRANSPORTER"
ROLE_RETAILER = "RETAILER"
ROLE_CONSUMER = "CONSUMER"

ROLE_ALIASES: Dict[str, str] = {
    "SHOPKEEPER": ROLE_RETAILER,
    "SHOP": ROLE_RETAILER,
}


def normalize_role(role: str | None) -> str | None:
    if not role:
        return None
    upper = str(role).strip().upper()
    if not upper:
        return None
    return ROLE_ALIASES.get(upper, upper)
