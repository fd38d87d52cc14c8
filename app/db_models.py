"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class User(Base):
    """A user namespace owning an ordered collection of lists."""

    __tablename__ = "users"

    uid: Mapped[str] = mapped_column(String(128), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    lists: Mapped[list["UserList"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        order_by="UserList.position",
    )


class UserList(Base):
    """A list registered by a user together with its surface settings."""

    __tablename__ = "user_lists"
    __table_args__ = (UniqueConstraint("uid", "list_id", name="uq_user_list"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uid: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.uid", ondelete="CASCADE")
    )
    list_id: Mapped[str] = mapped_column(String(32))
    position: Mapped[int] = mapped_column(Integer, default=0)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    show_in: Mapped[str | None] = mapped_column(String(16), nullable=True)
    visibility: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    default_sort: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    user: Mapped[User] = relationship(back_populates="lists")


class CatalogSnapshot(Base):
    """Classified items of one bucket of a user's list, replaced wholesale."""

    __tablename__ = "catalog_snapshots"
    __table_args__ = (
        UniqueConstraint("uid", "list_id", "bucket", name="uq_snapshot_bucket"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uid: Mapped[str] = mapped_column(String(128), index=True)
    list_id: Mapped[str] = mapped_column(String(32))
    bucket: Mapped[str] = mapped_column(String(16))
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON)
    item_count: Mapped[int] = mapped_column(Integer, default=0)
    generated_at: Mapped[datetime] = mapped_column(DateTime)


class ListReport(Base):
    """Outcome of the last classification pass over a list."""

    __tablename__ = "list_reports"
    __table_args__ = (UniqueConstraint("uid", "list_id", name="uq_list_report"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uid: Mapped[str] = mapped_column(String(128), index=True)
    list_id: Mapped[str] = mapped_column(String(32))
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ids: Mapped[list[str]] = mapped_column(JSON)
    movie_count: Mapped[int] = mapped_column(Integer, default=0)
    series_count: Mapped[int] = mapped_column(Integer, default=0)
    excluded_count: Mapped[int] = mapped_column(Integer, default=0)
    episode_map: Mapped[list[dict[str, str]] | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    checked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
