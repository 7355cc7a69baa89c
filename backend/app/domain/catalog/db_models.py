from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.infra.db import Base


class Service(Base):
    __tablename__ = "services"

    service_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text())
    category: Mapped[str | None] = mapped_column(String(100))
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    deposit: Mapped[ServiceDeposit | None] = relationship(
        "ServiceDeposit", back_populates="service", uselist=False, lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_services_duration_positive"),
        CheckConstraint("price_cents >= 0", name="ck_services_price_non_negative"),
        Index("ix_services_active_position", "is_active", "position"),
    )


class ServiceDeposit(Base):
    __tablename__ = "service_deposits"

    service_id: Mapped[str] = mapped_column(
        ForeignKey("services.service_id", ondelete="CASCADE"), primary_key=True
    )
    deposit_type: Mapped[str] = mapped_column(String(16), nullable=False)
    deposit_value: Mapped[int] = mapped_column(Integer, nullable=False)

    service: Mapped[Service] = relationship("Service", back_populates="deposit")

    __table_args__ = (
        CheckConstraint("deposit_type IN ('flat', 'percent')", name="ck_service_deposits_type"),
        CheckConstraint("deposit_value >= 0", name="ck_service_deposits_value"),
    )


class Product(Base):
    __tablename__ = "products"

    product_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    handle: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    variants: Mapped[list[ProductVariant]] = relationship(
        "ProductVariant", back_populates="product", lazy="selectin"
    )


class ProductVariant(Base):
    __tablename__ = "product_variants"

    variant_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    product_id: Mapped[str] = mapped_column(
        ForeignKey("products.product_id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="Default")
    sku: Mapped[str | None] = mapped_column(String(100))
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    inventory_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    product: Mapped[Product] = relationship("Product", back_populates="variants", lazy="selectin")

    __table_args__ = (
        CheckConstraint("inventory_quantity >= 0", name="ck_product_variants_inventory_non_negative"),
        Index("ix_product_variants_product_id", "product_id"),
    )
