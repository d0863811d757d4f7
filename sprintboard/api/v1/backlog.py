from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, List, Optional
from datetime import date, datetime
from pydantic import BaseModel, ConfigDict, Field, ValidationError as SchemaError

from ...config import settings
from ...database import get_db
from ...core.auth import PRODUCT_OWNERS, get_current_user, require_item_editor, require_project_role
from ...core.exceptions import ValidationError
from ...models.user import User
from ...models.backlog import ItemType, ItemPriority
from ...services.backlog_service import (
    BacklogFilters,
    BacklogService,
    BacklogSort,
    SortField,
    SortOrder,
)
from ...services.move_service import MoveService
from ...services.sprint_service import SprintService

router = APIRouter()


class BacklogItemCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: int = Field(alias="projectId")
    title: str
    description: Optional[str] = None
    type: ItemType = ItemType.USER_STORY
    priority: ItemPriority = ItemPriority.MEDIUM
    story_points: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    assigned_to_id: Optional[int] = None
    due_date: Optional[date] = None
    sprint_id: Optional[int] = None
    is_blocked: bool = False


class BacklogItemUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    type: Optional[ItemType] = None
    priority: Optional[ItemPriority] = None
    story_points: Optional[int] = None
    tags: Optional[List[str]] = None
    assigned_to_id: Optional[int] = None
    due_date: Optional[date] = None
    is_blocked: Optional[bool] = None


class BacklogItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    sprint_id: Optional[int]
    title: str
    description: Optional[str]
    type: str
    priority: str
    status: str
    position: int
    story_points: Optional[int]
    tags: List[str] = Field(default_factory=list)
    assigned_to_id: Optional[int]
    created_by_id: Optional[int]
    due_date: Optional[date]
    is_blocked: bool
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime


class ReorderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: int = Field(alias="projectId")
    item_ids: List[int] = Field(alias="itemIds")
    filters: Optional[Dict[str, Any]] = None
    sprint_id: Optional[int] = Field(default=None, alias="sprintId")
    status: str = "BACKLOG"


class AssignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[int] = Field(default=None, alias="userId")


class CriterionCreate(BaseModel):
    description: str


class CriterionUpdate(BaseModel):
    description: Optional[str] = None
    is_completed: Optional[bool] = None


class CriterionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    backlog_item_id: int
    description: str
    is_completed: bool
    created_at: datetime


class CommentCreate(BaseModel):
    content: str


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    backlog_item_id: int
    author_id: int
    content: str
    created_at: datetime


class AttachmentCreate(BaseModel):
    filename: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    url: Optional[str] = None


class AttachmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    backlog_item_id: int
    uploaded_by_id: int
    filename: str
    mime_type: Optional[str]
    size: Optional[int]
    url: Optional[str]
    created_at: datetime


class HistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    backlog_item_id: int
    user_id: Optional[int]
    action: str
    field_changed: Optional[str]
    old_value: Optional[str]
    new_value: Optional[str]
    created_at: datetime


def build_filters(**values: Any) -> BacklogFilters:
    """Turn raw query/body filter values into BacklogFilters, as a 400 on bad input"""
    try:
        return BacklogFilters(**{key: value for key, value in values.items() if value is not None})
    except SchemaError as e:
        raise ValidationError(f"Invalid filters: {e.errors()[0]['msg']}")


@router.get("", response_model=List[BacklogItemResponse])
async def list_backlog(
    project_id: int = Query(..., alias="projectId"),
    type: Optional[ItemType] = None,
    priority: Optional[ItemPriority] = None,
    tags: Optional[str] = None,
    assigned_to_id: Optional[str] = None,
    sprint_id: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: SortField = Query(SortField.POSITION, alias="sortBy"),
    sort_order: SortOrder = Query(SortOrder.ASC, alias="sortOrder"),
    limit: Optional[int] = Query(None, ge=1, le=settings.max_page_size),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a project's backlog items, filtered and sorted"""

    await require_project_role(db, project_id, current_user)

    filters = build_filters(
        type=type,
        priority=priority,
        tags=tags,
        assigned_to_id=assigned_to_id,
        sprint_id=sprint_id,
        status=status,
        search=search
    )

    return await BacklogService(db).list_by_project(
        project_id=project_id,
        filters=filters,
        sort=BacklogSort(sort_by=sort_by, sort_order=sort_order),
        limit=limit,
        offset=offset
    )


@router.post("", response_model=BacklogItemResponse, status_code=201)
async def create_backlog_item(
    request: BacklogItemCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Create an item at the end of the backlog (or of a sprint's TODO column)"""

    await require_project_role(db, request.project_id, current_user)

    return await BacklogService(db).create_item(
        creator_id=current_user.id,
        **request.model_dump()
    )


@router.post("/reorder")
async def reorder_backlog(
    request: ReorderRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Persist a full drag-and-drop ordering of one partition"""

    await require_project_role(db, request.project_id, current_user)

    filters = build_filters(**request.filters) if request.filters else None

    ordered = await MoveService(db).reorder_backlog(
        project_id=request.project_id,
        ordered_ids=request.item_ids,
        filters=filters,
        sprint_id=request.sprint_id,
        status=request.status.upper()
    )

    return {"message": f"Reordered {len(ordered)} backlog items"}


@router.get("/sprint/{sprint_id}", response_model=List[BacklogItemResponse])
async def get_sprint_items(
    sprint_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get the items committed to a sprint"""

    sprint = await SprintService(db).get_sprint(sprint_id)
    await require_project_role(db, sprint.project_id, current_user)

    return await BacklogService(db).list_by_sprint(sprint_id)


@router.get("/{item_id}", response_model=BacklogItemResponse)
async def get_backlog_item(
    item_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    item = await BacklogService(db).get_backlog_item(item_id)
    await require_project_role(db, item.project_id, current_user)
    return item


@router.put("/{item_id}")
async def update_backlog_item(
    item_id: int,
    request: BacklogItemUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Patch item fields; status and position change through the board"""

    backlog_service = BacklogService(db)

    item = await backlog_service.get_backlog_item(item_id)
    await require_item_editor(db, item, current_user)

    updated = await backlog_service.update_fields(
        item_id=item_id,
        patch=request.model_dump(exclude_unset=True),
        user_id=current_user.id
    )

    return {"message": "Backlog item updated", "version": updated.version}


@router.delete("/{item_id}")
async def delete_backlog_item(
    item_id: int,
    confirm: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Soft-delete an item (Product Owner only, with ?confirm=yes)"""

    backlog_service = BacklogService(db)

    item = await backlog_service.get_backlog_item(item_id)
    await require_project_role(db, item.project_id, current_user, PRODUCT_OWNERS)

    if confirm != "yes":
        raise ValidationError("Deletion must be confirmed with ?confirm=yes")

    await backlog_service.delete_item(item_id, user_id=current_user.id)

    return {"message": "Backlog item deleted"}


@router.patch("/{item_id}/assign")
async def assign_backlog_item(
    item_id: int,
    request: AssignRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    backlog_service = BacklogService(db)

    item = await backlog_service.get_backlog_item(item_id)
    await require_item_editor(db, item, current_user)

    item = await backlog_service.assign_member(item_id, request.user_id, user_id=current_user.id)

    message = "Item unassigned" if item.assigned_to_id is None else "Item assigned"
    return {"message": message, "assigned_to_id": item.assigned_to_id}


# Acceptance criteria

@router.get("/{item_id}/criteria", response_model=List[CriterionResponse])
async def list_criteria(
    item_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    backlog_service = BacklogService(db)
    item = await backlog_service.get_backlog_item(item_id)
    await require_project_role(db, item.project_id, current_user)
    return await backlog_service.list_criteria(item_id)


@router.post("/{item_id}/criteria", response_model=CriterionResponse, status_code=201)
async def add_criterion(
    item_id: int,
    request: CriterionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    backlog_service = BacklogService(db)
    item = await backlog_service.get_backlog_item(item_id)
    await require_item_editor(db, item, current_user)
    return await backlog_service.add_criterion(item_id, request.description)


@router.put("/{item_id}/criteria/{criterion_id}", response_model=CriterionResponse)
async def update_criterion(
    item_id: int,
    criterion_id: int,
    request: CriterionUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    backlog_service = BacklogService(db)
    item = await backlog_service.get_backlog_item(item_id)
    await require_item_editor(db, item, current_user)
    return await backlog_service.update_criterion(
        item_id,
        criterion_id,
        description=request.description,
        is_completed=request.is_completed
    )


@router.delete("/{item_id}/criteria/{criterion_id}")
async def delete_criterion(
    item_id: int,
    criterion_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    backlog_service = BacklogService(db)
    item = await backlog_service.get_backlog_item(item_id)
    await require_item_editor(db, item, current_user)
    await backlog_service.delete_criterion(item_id, criterion_id)
    return {"message": "Acceptance criterion deleted"}


# Comments, attachments and history

@router.get("/{item_id}/comments", response_model=List[CommentResponse])
async def list_comments(
    item_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    backlog_service = BacklogService(db)
    item = await backlog_service.get_backlog_item(item_id)
    await require_project_role(db, item.project_id, current_user)
    return await backlog_service.list_comments(item_id)


@router.post("/{item_id}/comments", response_model=CommentResponse, status_code=201)
async def add_comment(
    item_id: int,
    request: CommentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    backlog_service = BacklogService(db)
    item = await backlog_service.get_backlog_item(item_id)
    await require_project_role(db, item.project_id, current_user)
    return await backlog_service.add_comment(item_id, current_user.id, request.content)


@router.get("/{item_id}/attachments", response_model=List[AttachmentResponse])
async def list_attachments(
    item_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    backlog_service = BacklogService(db)
    item = await backlog_service.get_backlog_item(item_id)
    await require_project_role(db, item.project_id, current_user)
    return await backlog_service.list_attachments(item_id)


@router.post("/{item_id}/attachments", response_model=AttachmentResponse, status_code=201)
async def add_attachment(
    item_id: int,
    request: AttachmentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    backlog_service = BacklogService(db)
    item = await backlog_service.get_backlog_item(item_id)
    await require_project_role(db, item.project_id, current_user)
    return await backlog_service.add_attachment(
        item_id,
        uploaded_by_id=current_user.id,
        **request.model_dump()
    )


@router.delete("/{item_id}/attachments/{attachment_id}")
async def delete_attachment(
    item_id: int,
    attachment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    backlog_service = BacklogService(db)
    item = await backlog_service.get_backlog_item(item_id)
    await require_item_editor(db, item, current_user)
    await backlog_service.delete_attachment(item_id, attachment_id)
    return {"message": "Attachment deleted"}


@router.get("/{item_id}/history", response_model=List[HistoryResponse])
async def get_item_history(
    item_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    backlog_service = BacklogService(db)
    item = await backlog_service.get_backlog_item(item_id)
    await require_project_role(db, item.project_id, current_user)
    return await backlog_service.get_history(item_id)
