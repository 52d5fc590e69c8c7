"""
Database Module
"""
from .connection import Database
from .models import (
    Base,
    Currency,
    Customer,
    JobRole,
    OfflineSale,
    Order,
    OrderChannel,
    OrderItem,
    OrderStatus,
    Product,
    Review,
    Staff,
    StaffAccess,
    Variant,
    WishlistItem,
)

__all__ = [
    "Database",
    "Base",
    "Currency",
    "Customer",
    "JobRole",
    "OfflineSale",
    "Order",
    "OrderChannel",
    "OrderItem",
    "OrderStatus",
    "Product",
    "Review",
    "Staff",
    "StaffAccess",
    "Variant",
    "WishlistItem",
]
