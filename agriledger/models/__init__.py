"""Models package - imports all models for the application"""
from ..extensions import db

# Import in dependency order for PostgreSQL table creation
from .catalog import Status, EventType
from .product import Product
from .batch import Batch
from .event import Event, EventAttachment, SensorReading
from .order import Order, OrderItem, Shipment

__all__ = [
    "db",
    "Status",
    "EventType",
    "Product",
    "Batch",
    "Event",
    "EventAttachment",
    "SensorReading",
    "Order",
    "OrderItem",
    "Shipment",
]
