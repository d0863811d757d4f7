from enum import Enum
from sqlalchemy import Column, String, Integer, Text, Date, DateTime, ForeignKey, JSON, Boolean, Index
from sqlalchemy.orm import relationship
from .base import BaseModel


class ItemType(str, Enum):
    USER_STORY = "USER_STORY"
    BUG = "BUG"
    TECHNICAL_TASK = "TECHNICAL_TASK"
    IMPROVEMENT = "IMPROVEMENT"


class ItemPriority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ItemStatus(str, Enum):
    BACKLOG = "BACKLOG"
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class HistoryAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    MOVE = "MOVE"
    ASSIGN = "ASSIGN"
    DELETE = "DELETE"


FIBONACCI_POINTS = (1, 2, 3, 5, 8, 13, 21)

# Higher rank sorts first when ordering by priority descending
PRIORITY_RANK = {
    ItemPriority.CRITICAL.value: 4,
    ItemPriority.HIGH.value: 3,
    ItemPriority.MEDIUM.value: 2,
    ItemPriority.LOW.value: 1,
}


class BacklogItem(BaseModel):
    __tablename__ = "backlog_items"
    __table_args__ = (
        Index("ix_backlog_items_partition", "project_id", "sprint_id", "status", "position"),
    )

    # Core fields
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String, default=ItemType.USER_STORY.value, nullable=False)
    priority = Column(String, default=ItemPriority.MEDIUM.value, nullable=False)
    story_points = Column(Integer, nullable=True)
    tags = Column(JSON, default=list)

    # Workflow; (project_id, sprint_id, status) is the ordering partition
    status = Column(String, default=ItemStatus.BACKLOG.value, nullable=False)
    position = Column(Integer, default=1, nullable=False)
    is_blocked = Column(Boolean, default=False, nullable=False)
    due_date = Column(Date, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Soft delete and optimistic concurrency
    is_active = Column(Boolean, default=True, nullable=False)
    version = Column(Integer, nullable=False)

    # Relationships
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    sprint_id = Column(Integer, ForeignKey("sprints.id"), nullable=True)
    assigned_to_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    project = relationship("Project", back_populates="backlog_items")
    sprint = relationship("Sprint", back_populates="backlog_items")
    assignee = relationship("User", foreign_keys=[assigned_to_id])

    __mapper_args__ = {"version_id_col": version}


class AcceptanceCriterion(BaseModel):
    __tablename__ = "acceptance_criteria"

    description = Column(Text, nullable=False)
    is_completed = Column(Boolean, default=False, nullable=False)

    backlog_item_id = Column(Integer, ForeignKey("backlog_items.id"), nullable=False, index=True)


class ItemComment(BaseModel):
    __tablename__ = "item_comments"

    content = Column(Text, nullable=False)

    backlog_item_id = Column(Integer, ForeignKey("backlog_items.id"), nullable=False, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=False)


class ItemAttachment(BaseModel):
    __tablename__ = "item_attachments"

    filename = Column(String, nullable=False)
    mime_type = Column(String, nullable=True)
    size = Column(Integer, nullable=True)
    url = Column(String, nullable=True)

    backlog_item_id = Column(Integer, ForeignKey("backlog_items.id"), nullable=False, index=True)
    uploaded_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)


class ItemHistory(BaseModel):
    __tablename__ = "item_history"

    action = Column(String, nullable=False)  # CREATE, UPDATE, MOVE, ASSIGN, DELETE
    field_changed = Column(String, nullable=True)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)

    backlog_item_id = Column(Integer, ForeignKey("backlog_items.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
