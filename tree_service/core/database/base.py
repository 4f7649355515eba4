"""Base database model classes with composable mixins.

This module provides the foundation for SQLAlchemy models with:
- Integer or UUID primary key strategies
- Timestamp tracking (created_at, updated_at)
- Automatic table name generation

Tree models combine these with one of the encoding mixins from
``tree_service.core.database.hierarchy``.

Examples:
    Simple model with integer PK and timestamps:
    class Tag(Base, IntegerPKMixin, TimestampMixin):
        __tablename__ = "tags"
        name: Mapped[str] = mapped_column(String(255), unique=True)

    Closure-table tree:
    class Category(Base, IntegerPKMixin, ClosureTableMixin):
        __tablename__ = "categories"
        name: Mapped[str] = mapped_column(String(255))
        parent_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id"))
        parent: Mapped[Category | None] = relationship(
            back_populates="children", remote_side="Category.id"
        )
        children: Mapped[list[Category]] = relationship(back_populates="parent")
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, MetaData
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column
from sqlalchemy.sql import func

# Consistent naming convention for database constraints
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative base with automatic table naming.

    Provides:
    - Consistent constraint naming via NAMING_CONVENTION
    - Automatic table name generation from class name (lowercase)
    - Metadata registry for all models, including closure junction tables
      registered by ``register_tree_events``
    """

    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    @declared_attr.directive
    def __tablename__(cls) -> str:
        """Auto-derive table name from class name (lowercase).

        For complex table names, override __tablename__ explicitly.
        """
        return cls.__name__.lower()


# ============================================================================
# Primary Key Mixins
# ============================================================================


class IntegerPKMixin:
    """Integer auto-increment primary key.

    Provides:
        id: Auto-incrementing integer primary key
    """

    __allow_unmapped__ = True

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True,
        comment="Auto-incrementing integer primary key",
    )


class UUIDPKMixin:
    """UUID v4 primary key.

    Provides:
        id: UUID v4 primary key (random)

    Materialized paths built from UUID keys are longer (37 characters per
    level including the separator); size the path column accordingly.
    """

    __allow_unmapped__ = True

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
        comment="UUID v4 primary key",
    )


# ============================================================================
# Tracking Mixins
# ============================================================================


class TimestampMixin:
    """Timestamp tracking for create and update operations.

    Provides:
        created_at: Timestamp of record creation (immutable)
        updated_at: Timestamp of last modification (auto-updates)

    A move rewrites the parent column through the ORM, so ``updated_at``
    advances on the moved entity only; bulk bound/path rewrites issued by
    the nested-set and materialized-path move plans bypass ``onupdate``.
    """

    __allow_unmapped__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        server_default=func.now(),
        nullable=False,
        comment="Timestamp of record creation",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        server_default=func.now(),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
        comment="Timestamp of last update",
    )


__all__ = [
    "NAMING_CONVENTION",
    "Base",
    "IntegerPKMixin",
    "TimestampMixin",
    "UUIDPKMixin",
]
