"""
Database Models - Retail Back Office

This module defines the persistence models the fulfillment core reads and
writes. Catalog, customer and staff records are owned by other parts of the
back office; the core mutates only:

- Variant.stock (Inventory Ledger)
- Product.average_rating / Product.rating_count (Rating Aggregator)
- Order / OrderItem (Order Assembler), Order.status (status machine)
- OfflineSale (Settlement Recorder)

Column types are kept portable so the same models run on PostgreSQL and
SQLite.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_id() -> str:
    return uuid.uuid4().hex


def _labels(enum_cls) -> List[str]:
    """Persist enum values ('Processing'), not member names"""
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Base class for all database models"""

    # Server-generated timestamps are fetched at flush; lazy refresh is not
    # available under asyncio
    __mapper_args__ = {"eager_defaults": True}


# =============================================================================
# ENUMERATIONS
# =============================================================================

class Currency(str, Enum):
    """Supported currencies; NGN is canonical"""
    NGN = "NGN"
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"


class OrderStatus(str, Enum):
    """Order status enumeration"""
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"


class OrderChannel(str, Enum):
    """Where the order was rung up"""
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


class JobRole(str, Enum):
    """Fine-grained staff duties"""
    SALES_REP = "SalesRep"
    CUSTOMER_SERVICE = "CustomerService"
    STORE_MANAGER = "StoreManager"
    INVENTORY = "Inventory"
    DISPATCHER = "Dispatcher"


class StaffAccess(str, Enum):
    """Coarse system privilege tier"""
    STAFF = "Staff"
    ADMIN = "Admin"
    SUPER_ADMIN = "SuperAdmin"


# =============================================================================
# PEOPLE
# =============================================================================

class Customer(Base):
    """Registered storefront customer"""
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    address: Mapped[Optional[str]] = mapped_column(Text)
    country: Mapped[Optional[str]] = mapped_column(String(100))
    state: Mapped[Optional[str]] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    orders: Mapped[List["Order"]] = relationship(back_populates="customer")
    reviews: Mapped[List["Review"]] = relationship(back_populates="customer")
    wishlist: Mapped[List["WishlistItem"]] = relationship(back_populates="customer")


class Staff(Base):
    """
    Back-office staff member.

    `job_roles` (duties) and `access` (privilege tier) are independent
    authorization dimensions.
    """
    __tablename__ = "staff"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    job_roles: Mapped[List[str]] = mapped_column(JSON, default=list)
    access: Mapped[StaffAccess] = mapped_column(
        SQLEnum(StaffAccess, values_callable=_labels), default=StaffAccess.STAFF
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    orders: Mapped[List["Order"]] = relationship(back_populates="staff")
    offline_sales: Mapped[List["OfflineSale"]] = relationship(back_populates="staff")

    @property
    def roles(self) -> List[JobRole]:
        return [JobRole(r) for r in self.job_roles or []]


# =============================================================================
# CATALOG
# =============================================================================

class Product(Base):
    """
    Product Catalog Table

    Per-currency list prices are stored as four columns; `prices` exposes
    them as a currency mapping. `version` guards the rating aggregate
    against lost updates.
    """
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    images: Mapped[List[str]] = mapped_column(JSON, default=list)

    # Pricing
    price_ngn: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    price_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    price_eur: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    price_gbp: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    size_mods: Mapped[bool] = mapped_column(Boolean, default=False)

    # Ratings (derived)
    average_rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    rating_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    variants: Mapped[List["Variant"]] = relationship(back_populates="product")
    reviews: Mapped[List["Review"]] = relationship(back_populates="product")
    wishlist_items: Mapped[List["WishlistItem"]] = relationship(back_populates="product")

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    __table_args__ = (
        Index("ix_products_category", "category"),
    )

    @property
    def prices(self) -> Dict[Currency, Optional[Decimal]]:
        """List price per currency; None means no stored price"""
        return {
            Currency.NGN: self.price_ngn,
            Currency.USD: self.price_usd,
            Currency.EUR: self.price_eur,
            Currency.GBP: self.price_gbp,
        }

    def price_in(self, currency: Currency) -> Optional[Decimal]:
        price = self.prices[Currency(currency)]
        return Decimal(price) if price is not None else None

    @property
    def primary_image(self) -> Optional[str]:
        return self.images[0] if self.images else None


class Variant(Base):
    """
    Product Variant Table

    A color/size combination; the unit of stock tracking.
    """
    __tablename__ = "variants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    color: Mapped[str] = mapped_column(String(50), nullable=False, default="N/A")
    size: Mapped[str] = mapped_column(String(50), nullable=False, default="N/A")
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weight: Mapped[Optional[float]] = mapped_column(Float)

    product: Mapped["Product"] = relationship(back_populates="variants")

    __table_args__ = (
        UniqueConstraint("product_id", "color", "size", name="uq_variants_product_color_size"),
        CheckConstraint("stock >= 0", name="ck_variants_stock_non_negative"),
        Index("ix_variants_product", "product_id"),
    )


class Review(Base):
    """One review per customer per product"""
    __tablename__ = "reviews"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    product: Mapped["Product"] = relationship(back_populates="reviews")
    customer: Mapped["Customer"] = relationship(back_populates="reviews")

    __table_args__ = (
        UniqueConstraint("product_id", "customer_id", name="uq_reviews_product_customer"),
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_reviews_rating_range"),
        Index("ix_reviews_product", "product_id"),
    )


class WishlistItem(Base):
    """Saved product for a customer"""
    __tablename__ = "wishlist_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    added_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    customer: Mapped["Customer"] = relationship(back_populates="wishlist")
    product: Mapped["Product"] = relationship(back_populates="wishlist_items")

    __table_args__ = (
        UniqueConstraint("customer_id", "product_id", name="uq_wishlist_customer_product"),
    )


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """
    Order Table

    `total_amount` is in the display currency, `total_ngn` is the canonical
    whole-naira total. Both cover items only; `delivery_fee` is separate.
    """
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id"), nullable=False
    )
    staff_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("staff.id"))

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, values_callable=_labels), nullable=False, default=OrderStatus.PROCESSING
    )
    channel: Mapped[OrderChannel] = mapped_column(
        SQLEnum(OrderChannel, values_callable=_labels), nullable=False, default=OrderChannel.ONLINE
    )
    currency: Mapped[Currency] = mapped_column(SQLEnum(Currency, values_callable=_labels), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_ngn: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False)

    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    delivery_details: Mapped[Optional[dict]] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    customer: Mapped["Customer"] = relationship(back_populates="orders")
    staff: Mapped[Optional["Staff"]] = relationship(back_populates="orders")
    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", order_by="OrderItem.position"
    )
    offline_sale: Mapped[Optional["OfflineSale"]] = relationship(
        back_populates="order", uselist=False
    )

    __table_args__ = (
        Index("ix_orders_customer", "customer_id"),
        Index("ix_orders_status", "status"),
        Index("ix_orders_created", "created_at"),
    )


class OrderItem(Base):
    """
    Order Line Snapshot

    Copies of product/variant attributes at purchase time; never updated
    after the order is created.
    """
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    variant_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("variants.id", ondelete="SET NULL")
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Snapshot
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    image: Mapped[Optional[str]] = mapped_column(String(1000))
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[str] = mapped_column(String(50), nullable=False)
    size: Mapped[str] = mapped_column(String(50), nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[Currency] = mapped_column(SQLEnum(Currency, values_callable=_labels), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    has_size_mod: Mapped[bool] = mapped_column(Boolean, default=False)
    size_mod_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    custom_size: Mapped[Optional[dict]] = mapped_column(JSON)

    order: Mapped["Order"] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        Index("ix_order_items_order", "order_id"),
    )


class OfflineSale(Base):
    """In-person settlement; at most one per order"""
    __tablename__ = "offline_sales"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    staff_id: Mapped[str] = mapped_column(String(36), ForeignKey("staff.id"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    order: Mapped["Order"] = relationship(back_populates="offline_sale")
    staff: Mapped["Staff"] = relationship(back_populates="offline_sales")

    __table_args__ = (
        UniqueConstraint("order_id", name="uq_offline_sales_order"),
    )
