from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError as SchemaError

from ...database import get_db
from ...core.auth import PRODUCT_OWNERS, get_current_user, require_project_role
from ...core.exceptions import ValidationError
from ...models.user import User
from ...models.backlog import ItemType, ItemPriority
from ...services.backlog_service import BacklogService
from ...services.board_service import Board, BoardFilters, BoardService
from ...services.move_service import MoveService
from ...services.sprint_service import SprintService
from .backlog import BacklogItemResponse

router = APIRouter()


class MoveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to_status: str = Field(alias="toStatus")
    to_position: Optional[int] = Field(default=None, alias="toPosition")
    to_sprint_id: Optional[int] = Field(default=None, alias="toSprintId")
    expected_version: Optional[int] = Field(default=None, alias="expectedVersion")


class MoveResponse(BaseModel):
    message: str
    item: BacklogItemResponse


class ColumnCreate(BaseModel):
    name: str
    wip_limit: Optional[int] = None


class ColumnUpdate(BaseModel):
    name: Optional[str] = None
    wip_limit: Optional[int] = None


class ColumnResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    name: str
    status: str
    position: int
    wip_limit: Optional[int]


@router.get("/{sprint_id}", response_model=Board)
async def get_board(
    sprint_id: int,
    assigned_to_id: Optional[str] = None,
    type: Optional[ItemType] = None,
    priority: Optional[ItemPriority] = None,
    tags: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Kanban board of a sprint, one column per status"""

    sprint = await SprintService(db).get_sprint(sprint_id)
    await require_project_role(db, sprint.project_id, current_user)

    try:
        filters = BoardFilters(assigned_to_id=assigned_to_id, type=type, priority=priority, tags=tags)
    except SchemaError as e:
        raise ValidationError(f"Invalid filters: {e.errors()[0]['msg']}")

    return await BoardService(db).get_board(sprint_id, filters)


@router.patch("/move/{item_id}", response_model=MoveResponse)
async def move_item(
    item_id: int,
    request: MoveRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Drag an item to another column and/or position"""

    item = await BacklogService(db).get_backlog_item(item_id)
    await require_project_role(db, item.project_id, current_user)

    item = await MoveService(db).move_item(
        item_id=item_id,
        to_status=request.to_status,
        to_position=request.to_position,
        to_sprint_id=request.to_sprint_id,
        expected_version=request.expected_version,
        user_id=current_user.id
    )

    return MoveResponse(
        message=f"Item moved to {item.status} at position {item.position}",
        item=BacklogItemResponse.model_validate(item)
    )


# Column configuration

@router.get("/columns/{project_id}", response_model=List[ColumnResponse])
async def list_columns(
    project_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    await require_project_role(db, project_id, current_user)
    return await BoardService(db).list_columns(project_id)


@router.post("/columns/{project_id}", response_model=ColumnResponse, status_code=201)
async def create_column(
    project_id: int,
    request: ColumnCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    await require_project_role(db, project_id, current_user, PRODUCT_OWNERS)
    return await BoardService(db).create_column(project_id, request.name, request.wip_limit)


@router.put("/columns/{column_id}", response_model=ColumnResponse)
async def update_column(
    column_id: int,
    request: ColumnUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Rename a column or change its WIP limit; an explicit null clears the limit"""

    board_service = BoardService(db)
    column = await board_service.get_column(column_id)
    await require_project_role(db, column.project_id, current_user, PRODUCT_OWNERS)

    return await board_service.update_column(
        column_id,
        name=request.name,
        wip_limit=request.wip_limit,
        clear_wip_limit="wip_limit" in request.model_fields_set and request.wip_limit is None
    )


@router.delete("/columns/{column_id}")
async def delete_column(
    column_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    board_service = BoardService(db)
    column = await board_service.get_column(column_id)
    await require_project_role(db, column.project_id, current_user, PRODUCT_OWNERS)

    await board_service.delete_column(column_id)
    return {"message": "Column deleted"}
