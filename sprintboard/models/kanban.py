from sqlalchemy import Column, String, Integer, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from .base import BaseModel


class KanbanColumn(BaseModel):
    """Project-defined board column; items belong to it through `status`."""
    __tablename__ = "kanban_columns"
    __table_args__ = (
        UniqueConstraint("project_id", "status", name="uq_kanban_column_status"),
    )

    name = Column(String, nullable=False)
    status = Column(String, nullable=False)
    position = Column(Integer, nullable=False)
    wip_limit = Column(Integer, nullable=True)

    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)

    project = relationship("Project", back_populates="columns")


def status_key(name: str) -> str:
    """Derive the item status key a column named `name` collects."""
    return "_".join(name.strip().upper().split())
