from enum import Enum
from sqlalchemy import Column, String, Integer, Date, ForeignKey, Text, Boolean
from sqlalchemy.orm import relationship
from .base import BaseModel


class SprintStatus(str, Enum):
    PLANNING = "PLANNING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class Sprint(BaseModel):
    __tablename__ = "sprints"

    name = Column(String, nullable=False)
    objective = Column(Text, nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String, default=SprintStatus.PLANNING.value, nullable=False)

    # Sprint metrics (story points)
    planned_velocity = Column(Integer, default=0, nullable=False)
    actual_velocity = Column(Integer, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    # Foreign keys
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)

    # Relationships
    project = relationship("Project", back_populates="sprints")
    backlog_items = relationship("BacklogItem", back_populates="sprint")
