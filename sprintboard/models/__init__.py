"""
Persistence models for SprintBoard.

Importing this package registers every table on `Base.metadata`.
"""

from .base import Base, BaseModel
from .user import User, Project, ProjectMembership, ProjectRole, ProjectStatus
from .sprint import Sprint, SprintStatus
from .backlog import (
    BacklogItem,
    AcceptanceCriterion,
    ItemComment,
    ItemAttachment,
    ItemHistory,
    ItemType,
    ItemPriority,
    ItemStatus,
    HistoryAction,
    FIBONACCI_POINTS,
    PRIORITY_RANK,
)
from .kanban import KanbanColumn, status_key

__all__ = [
    "Base",
    "BaseModel",
    "User",
    "Project",
    "ProjectMembership",
    "ProjectRole",
    "ProjectStatus",
    "Sprint",
    "SprintStatus",
    "BacklogItem",
    "AcceptanceCriterion",
    "ItemComment",
    "ItemAttachment",
    "ItemHistory",
    "ItemType",
    "ItemPriority",
    "ItemStatus",
    "HistoryAction",
    "FIBONACCI_POINTS",
    "PRIORITY_RANK",
    "KanbanColumn",
    "status_key",
]
