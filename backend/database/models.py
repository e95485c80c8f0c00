from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database.base import Base


def _new_id() -> str:
    return str(uuid4())


class Project(Base):
    __tablename__ = "projects"

    project_id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="draft")  # draft, processing, complete
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    # Next append position for clips; bumped under the project row lock.
    clip_sequence = Column(Integer, nullable=False, default=0)

    clips = relationship(
        "Clip",
        back_populates="project",
        order_by="Clip.sequence",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<Project project_id={self.project_id} name={self.name} status={self.status}>"


class Clip(Base):
    """
    A stored video asset.

    Rows are append-only: processing creates a new clip whose
    ``source_clip_id`` points at the clip it was derived from.
    """

    __tablename__ = "clips"

    clip_id = Column(String(36), primary_key=True, default=_new_id)
    project_id = Column(
        String(36),
        ForeignKey("projects.project_id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence = Column(Integer, nullable=False)

    original_name = Column(String, nullable=False)
    filename = Column(String, nullable=False)
    storage_path = Column(String, nullable=False)
    size = Column(BigInteger, nullable=False, default=0)
    mime_type = Column(String, nullable=False)
    uploaded_at = Column(DateTime(timezone=True), nullable=False)

    # Derived clips only
    source_clip_id = Column(String(36), ForeignKey("clips.clip_id"), nullable=True)
    operation = Column(JSON, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    project = relationship("Project", back_populates="clips")

    __table_args__ = (
        UniqueConstraint("project_id", "sequence", name="uq_clips_project_sequence"),
        Index("ix_clips_project_id", project_id),
        Index("ix_clips_source_clip_id", source_clip_id),
    )

    def __repr__(self):
        return f"<Clip clip_id={self.clip_id} project_id={self.project_id} source_clip_id={self.source_clip_id}>"
