from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index
from datetime import datetime
from lineage.database import Base
import uuid


class Node(Base):
    """
    A person in the tree.

    `path` is the materialized ancestry ("1.3.2"). It is NULL for unplaced
    people (e.g. a spouse from outside the family line), who then also have
    no generation and no sibling index.
    """
    __tablename__ = "nodes"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    # ------------------------------------
    # Tree position
    # ------------------------------------
    path = Column(String, nullable=True, unique=True)
    generation = Column(Integer, nullable=True)
    sibling_index = Column(Integer, nullable=True)

    parent_id = Column(
        String,
        ForeignKey("nodes.id"),
        nullable=True,
        index=True,
    )

    # Non-tree reference, only used for inner-circle checks
    mother_id = Column(
        String,
        ForeignKey("nodes.id"),
        nullable=True,
        index=True,
    )

    # Cached live descendant count
    descendant_count = Column(Integer, default=0, nullable=False)

    # ------------------------------------
    # Display / biographical (opaque to the engine)
    # ------------------------------------
    display_name = Column(String, nullable=False)
    gender = Column(String, nullable=True)
    status = Column(String, default="alive", nullable=False)
    birth_year = Column(Integer, nullable=True)
    death_year = Column(Integer, nullable=True)
    bio = Column(Text, nullable=True)

    # ------------------------------------
    # Bookkeeping
    # ------------------------------------
    version = Column(Integer, default=1, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_nodes_parent_sibling", "parent_id", "sibling_index"),
        Index("ix_nodes_generation", "generation"),
    )

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None

    @property
    def is_placed(self) -> bool:
        return self.path is not None
