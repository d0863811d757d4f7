from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from datetime import date, datetime
from pydantic import BaseModel, ConfigDict, Field

from ...database import get_db
from ...core.auth import SPRINT_MANAGERS, get_current_user, require_project_role
from ...models.user import User
from ...models.sprint import SprintStatus
from ...services.sprint_service import (
    SprintCapacity,
    SprintItemChange,
    SprintService,
    SprintSummary,
    UnfinishedAction,
)

router = APIRouter()


class SprintCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: int = Field(alias="projectId")
    name: str
    objective: Optional[str] = None
    start_date: date
    end_date: date
    planned_velocity: Optional[int] = None


class SprintUpdate(BaseModel):
    name: Optional[str] = None
    objective: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    planned_velocity: Optional[int] = None


class SprintResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    name: str
    objective: Optional[str]
    start_date: date
    end_date: date
    status: str
    planned_velocity: int
    actual_velocity: Optional[int]
    created_at: datetime
    updated_at: datetime


class CompleteRequest(BaseModel):
    unfinished_action: UnfinishedAction = UnfinishedAction.BACKLOG
    next_sprint_id: Optional[int] = None


class CompleteResponse(BaseModel):
    message: str
    actual_velocity: int
    unfinished_handled: UnfinishedAction
    unfinished_count: int
    next_sprint_id: Optional[int] = None


class SprintItemRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_id: int = Field(alias="itemId")


@router.get("", response_model=List[SprintSummary])
async def list_sprints(
    project_id: int = Query(..., alias="projectId"),
    status: Optional[SprintStatus] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a project's sprints with completed/pending item counts"""

    await require_project_role(db, project_id, current_user)
    return await SprintService(db).get_project_sprints(project_id, status)


@router.get("/active", response_model=Optional[SprintResponse])
async def get_active_sprint(
    project_id: int = Query(..., alias="projectId"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    await require_project_role(db, project_id, current_user)
    return await SprintService(db).get_active_sprint(project_id)


@router.post("", response_model=SprintResponse, status_code=201)
async def create_sprint(
    request: SprintCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Create a new sprint (Scrum Master or Product Owner)"""

    await require_project_role(db, request.project_id, current_user, SPRINT_MANAGERS)
    return await SprintService(db).create_sprint(**request.model_dump())


@router.get("/{sprint_id}", response_model=SprintResponse)
async def get_sprint(
    sprint_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get sprint details"""

    sprint = await SprintService(db).get_sprint(sprint_id)
    await require_project_role(db, sprint.project_id, current_user)
    return sprint


@router.put("/{sprint_id}", response_model=SprintResponse)
async def update_sprint(
    sprint_id: int,
    request: SprintUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    sprint_service = SprintService(db)
    sprint = await sprint_service.get_sprint(sprint_id)
    await require_project_role(db, sprint.project_id, current_user, SPRINT_MANAGERS)

    return await sprint_service.update_sprint(sprint_id, request.model_dump(exclude_unset=True))


@router.delete("/{sprint_id}")
async def delete_sprint(
    sprint_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    sprint_service = SprintService(db)
    sprint = await sprint_service.get_sprint(sprint_id)
    await require_project_role(db, sprint.project_id, current_user, SPRINT_MANAGERS)

    await sprint_service.delete_sprint(sprint_id)
    return {"message": "Sprint deleted"}


@router.put("/{sprint_id}/activate")
async def activate_sprint(
    sprint_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    sprint_service = SprintService(db)
    sprint = await sprint_service.get_sprint(sprint_id)
    await require_project_role(db, sprint.project_id, current_user, SPRINT_MANAGERS)

    sprint = await sprint_service.activate(sprint_id)
    return {"message": f"Sprint '{sprint.name}' is now active"}


@router.put("/{sprint_id}/complete", response_model=CompleteResponse)
async def complete_sprint(
    sprint_id: int,
    request: Optional[CompleteRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Close the sprint and move unfinished work to the backlog or the next sprint"""

    request = request or CompleteRequest()

    sprint_service = SprintService(db)
    sprint = await sprint_service.get_sprint(sprint_id)
    await require_project_role(db, sprint.project_id, current_user, SPRINT_MANAGERS)

    result = await sprint_service.complete(
        sprint_id,
        unfinished_action=request.unfinished_action,
        next_sprint_id=request.next_sprint_id
    )

    return CompleteResponse(
        message=f"Sprint '{sprint.name}' completed",
        actual_velocity=result.actual_velocity,
        unfinished_handled=result.unfinished_handled,
        unfinished_count=result.unfinished_count,
        next_sprint_id=result.next_sprint_id
    )


@router.get("/{sprint_id}/capacity", response_model=SprintCapacity)
async def get_sprint_capacity(
    sprint_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    sprint_service = SprintService(db)
    sprint = await sprint_service.get_sprint(sprint_id)
    await require_project_role(db, sprint.project_id, current_user)

    return await sprint_service.capacity(sprint_id)


@router.post("/{sprint_id}/items", response_model=SprintItemChange)
async def add_sprint_item(
    sprint_id: int,
    request: SprintItemRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Pull a backlog item into the sprint"""

    sprint_service = SprintService(db)
    sprint = await sprint_service.get_sprint(sprint_id)
    await require_project_role(db, sprint.project_id, current_user, SPRINT_MANAGERS)

    return await sprint_service.add_item(sprint_id, request.item_id)


@router.delete("/{sprint_id}/items/{item_id}", response_model=SprintItemChange)
async def remove_sprint_item(
    sprint_id: int,
    item_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    sprint_service = SprintService(db)
    sprint = await sprint_service.get_sprint(sprint_id)
    await require_project_role(db, sprint.project_id, current_user, SPRINT_MANAGERS)

    return await sprint_service.remove_item(sprint_id, item_id)
