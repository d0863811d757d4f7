from enum import Enum
from sqlalchemy import Column, String, Boolean, ForeignKey, Text, Integer, UniqueConstraint
from sqlalchemy.orm import relationship
from .base import BaseModel


class ProjectRole(str, Enum):
    PRODUCT_OWNER = "PRODUCT_OWNER"
    SCRUM_MASTER = "SCRUM_MASTER"
    DEVELOPER = "DEVELOPER"


class ProjectStatus(str, Enum):
    PLANNING = "PLANNING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class User(BaseModel):
    __tablename__ = "users"

    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Relationships
    memberships = relationship("ProjectMembership", back_populates="user")


class Project(BaseModel):
    __tablename__ = "projects"

    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, default=ProjectStatus.PLANNING.value, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Relationships
    members = relationship("ProjectMembership", back_populates="project")
    sprints = relationship("Sprint", back_populates="project")
    backlog_items = relationship("BacklogItem", back_populates="project")
    columns = relationship("KanbanColumn", back_populates="project")


class ProjectMembership(BaseModel):
    __tablename__ = "project_memberships"
    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_membership_project_user"),
    )

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    role = Column(String, default=ProjectRole.DEVELOPER.value, nullable=False)

    # Relationships
    user = relationship("User", back_populates="memberships")
    project = relationship("Project", back_populates="members")
