"""Object store ORM models.

Each resource is one row holding its full JSON document, indexed by
type identity and name so that lookups and namespace listings stay
cheap.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from forge_build.db import Base


class ResourceRecord(Base):
    """ORM model for a stored resource.

    Attributes:
        id: Primary key.
        group: API group ("" for the core group).
        kind: Resource kind.
        namespace: Namespace ("" for cluster-scoped resources).
        name: Resource name.
        uid: Unique id assigned on creation.
        resource_version: Incremented on every write.
        document: Full resource document.
        created_at: Row creation time.
        updated_at: Last write time.
    """

    __tablename__ = "resources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    group: Mapped[str] = mapped_column(String(253), nullable=False, default="")
    kind: Mapped[str] = mapped_column(String(63), nullable=False)
    namespace: Mapped[str] = mapped_column(String(63), nullable=False, default="")
    name: Mapped[str] = mapped_column(String(253), nullable=False)
    uid: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)

    resource_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("group", "kind", "namespace", "name", name="uq_resource_key"),
        Index("ix_resources_group_kind_namespace", "group", "kind", "namespace"),
    )

    def __repr__(self) -> str:
        return (
            f"<ResourceRecord(kind={self.kind!r}, namespace={self.namespace!r}, "
            f"name={self.name!r}, rv={self.resource_version})>"
        )


__all__ = ["ResourceRecord"]
