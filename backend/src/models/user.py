"""User model for bookmark owners."""
from typing import TYPE_CHECKING

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, CreatedAtMixin, UUIDv7Mixin

if TYPE_CHECKING:
    from models.bookmark import Bookmark
    from models.tag import Tag


class User(Base, UUIDv7Mixin, CreatedAtMixin):
    """User model - maps the upstream identity to a local owner id."""

    __tablename__ = "users"

    external_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        comment="Identity asserted by the upstream auth proxy",
    )
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    bookmarks: Mapped[list["Bookmark"]] = relationship(
        back_populates="user",
        passive_deletes=True,
    )
    tags: Mapped[list["Tag"]] = relationship(
        back_populates="user",
        passive_deletes=True,
    )
