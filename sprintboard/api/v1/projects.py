from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from ...database import get_db
from ...core.auth import SPRINT_MANAGERS, get_current_user, require_project_role
from ...models.user import ProjectRole, User
from ...services.project_service import ProjectService

router = APIRouter()


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    status: str
    owner_id: int
    created_at: datetime


class MemberCreate(BaseModel):
    user_id: int
    role: ProjectRole = ProjectRole.DEVELOPER


class MemberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    user_id: int
    role: str


@router.post("", response_model=ProjectResponse, status_code=201)
async def create_project(
    request: ProjectCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Create a project owned by the caller"""
    return await ProjectService(db).create_project(
        name=request.name,
        owner_id=current_user.id,
        description=request.description
    )


@router.get("", response_model=List[ProjectResponse])
async def list_projects(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return await ProjectService(db).list_user_projects(current_user.id)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    project_service = ProjectService(db)
    project = await project_service.get_project(project_id)
    await require_project_role(db, project_id, current_user)
    return project


@router.get("/{project_id}/members", response_model=List[MemberResponse])
async def list_members(
    project_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    await require_project_role(db, project_id, current_user)
    return await ProjectService(db).list_members(project_id)


@router.post("/{project_id}/members", response_model=MemberResponse, status_code=201)
async def add_member(
    project_id: int,
    request: MemberCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Add a user to the project (Scrum Master or Product Owner)"""

    await require_project_role(db, project_id, current_user, SPRINT_MANAGERS)
    return await ProjectService(db).add_member(project_id, request.user_id, request.role)
