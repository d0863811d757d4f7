from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Sequence, Set, Union
from datetime import date

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import (
    ConflictError,
    NotFoundError,
    ServiceError,
    SprintNotFoundError,
    ValidationError,
)
from ..models.backlog import BacklogItem, ItemComment, ItemAttachment, ItemStatus, ItemType, ItemPriority
from ..models.kanban import KanbanColumn, status_key
from ..models.sprint import Sprint
from . import ordering
from ..utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_COLUMNS = (
    ("To-Do", ItemStatus.TODO.value),
    ("In Progress", ItemStatus.IN_PROGRESS.value),
    ("Done", ItemStatus.DONE.value),
)


class BoardFilters(BaseModel):
    assigned_to_id: Optional[Union[int, Literal["unassigned"]]] = None
    type: Optional[ItemType] = None
    priority: Optional[ItemPriority] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("assigned_to_id", mode="before")
    @classmethod
    def _null_means_unassigned(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() in ("null", "none"):
            return "unassigned"
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        return value


class BoardCard(BaseModel):
    id: int
    title: str
    type: str
    priority: str
    status: str
    position: int
    story_points: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    assigned_to_id: Optional[int] = None
    due_date: Optional[date] = None
    is_blocked: bool = False
    is_overdue: bool = False
    comment_count: int = 0
    attachment_count: int = 0
    version: int


class BoardColumn(BaseModel):
    id: Optional[int] = None
    name: str
    status: str
    wip_limit: Optional[int] = None
    item_count: int = 0
    warning: Optional[str] = None
    items: List[BoardCard] = Field(default_factory=list)


class Board(BaseModel):
    sprint_id: int
    project_id: int
    columns: List[BoardColumn]
    total_items: int


def is_overdue(item: BacklogItem, today: date) -> bool:
    return (
        item.due_date is not None
        and item.due_date < today
        and item.status != ItemStatus.DONE.value
    )


def wip_warning(item_count: int, wip_limit: Optional[int]) -> Optional[str]:
    """Advisory only; an exceeded limit never blocks a read or a move"""
    if wip_limit and item_count > wip_limit:
        return f"WIP limit exceeded ({item_count}/{wip_limit})"
    return None


def matches_board_filters(item: BacklogItem, filters: BoardFilters) -> bool:
    if filters.assigned_to_id == "unassigned":
        if item.assigned_to_id is not None:
            return False
    elif filters.assigned_to_id is not None and item.assigned_to_id != filters.assigned_to_id:
        return False
    if filters.type is not None and item.type != filters.type.value:
        return False
    if filters.priority is not None and item.priority != filters.priority.value:
        return False
    if filters.tags:
        wanted = {tag.lower() for tag in filters.tags}
        if not any(str(tag).lower() in wanted for tag in (item.tags or [])):
            return False
    return True


class BoardService:
    """Read-side projection of a sprint into board columns, plus column config"""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_board(
        self,
        sprint_id: int,
        filters: Optional[BoardFilters] = None,
        today: Optional[date] = None
    ) -> Board:
        """Partition a sprint's items into columns, annotated for display."""

        sprint = await self.db.get(Sprint, sprint_id)
        if sprint is None or not sprint.is_active:
            raise SprintNotFoundError(sprint_id)

        filters = filters or BoardFilters()
        today = today or date.today()

        stmt = select(BacklogItem).where(
            BacklogItem.sprint_id == sprint_id,
            BacklogItem.is_active == True
        )
        result = await self.db.execute(stmt)
        items = [item for item in result.scalars().all() if matches_board_filters(item, filters)]

        item_ids = [item.id for item in items]
        comment_counts = await self._count_by_item(ItemComment, item_ids)
        attachment_counts = await self._count_by_item(ItemAttachment, item_ids)

        columns: List[BoardColumn] = []
        for column in await self.board_columns(sprint.project_id):
            cards = [
                BoardCard(
                    id=item.id,
                    title=item.title,
                    type=item.type,
                    priority=item.priority,
                    status=item.status,
                    position=item.position,
                    story_points=item.story_points,
                    tags=item.tags or [],
                    assigned_to_id=item.assigned_to_id,
                    due_date=item.due_date,
                    is_blocked=bool(item.is_blocked),
                    is_overdue=is_overdue(item, today),
                    comment_count=comment_counts.get(item.id, 0),
                    attachment_count=attachment_counts.get(item.id, 0),
                    version=item.version,
                )
                for item in ordering.stable_sort([i for i in items if i.status == column.status])
            ]
            column.items = cards
            column.item_count = len(cards)
            column.warning = wip_warning(column.item_count, column.wip_limit)
            columns.append(column)

        return Board(
            sprint_id=sprint_id,
            project_id=sprint.project_id,
            columns=columns,
            total_items=len(items)
        )

    async def board_columns(self, project_id: int) -> List[BoardColumn]:
        """Custom columns in order, or the default status columns"""

        custom = await self.list_columns(project_id)
        if custom:
            return [
                BoardColumn(id=c.id, name=c.name, status=c.status, wip_limit=c.wip_limit)
                for c in custom
            ]
        return [BoardColumn(name=name, status=status) for name, status in DEFAULT_COLUMNS]

    async def valid_statuses(self, project_id: int) -> Set[str]:
        statuses = {status.value for status in ItemStatus}
        statuses.update(column.status for column in await self.list_columns(project_id))
        return statuses

    # Column management

    async def list_columns(self, project_id: int) -> List[KanbanColumn]:
        stmt = (
            select(KanbanColumn)
            .where(KanbanColumn.project_id == project_id)
            .order_by(KanbanColumn.position, KanbanColumn.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def create_column(
        self,
        project_id: int,
        name: str,
        wip_limit: Optional[int] = None
    ) -> KanbanColumn:
        if not name or not name.strip():
            raise ValidationError("Column name is required")
        self._validate_wip_limit(wip_limit)

        key = status_key(name)
        if key == ItemStatus.BACKLOG.value:
            raise ValidationError("BACKLOG cannot be used as a board column")

        existing = await self.list_columns(project_id)
        if any(column.status == key for column in existing):
            raise ConflictError(f"A column for status {key} already exists")

        try:
            column = KanbanColumn(
                project_id=project_id,
                name=name.strip(),
                status=key,
                position=max((c.position for c in existing), default=0) + 1,
                wip_limit=wip_limit
            )
            self.db.add(column)
            await self.db.commit()

            logger.info(f"Added column {key} to project {project_id}")
            return column

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to add column: {str(e)}")
            if isinstance(e, ServiceError):
                raise
            raise ServiceError(f"Adding column failed: {str(e)}")

    async def get_column(self, column_id: int) -> KanbanColumn:
        column = await self.db.get(KanbanColumn, column_id)
        if column is None:
            raise NotFoundError(f"Column {column_id} not found")
        return column

    async def update_column(
        self,
        column_id: int,
        name: Optional[str] = None,
        wip_limit: Optional[int] = None,
        clear_wip_limit: bool = False
    ) -> KanbanColumn:
        """Rename is refused while items sit in the column; wip_limit is always editable"""

        column = await self.get_column(column_id)
        self._validate_wip_limit(wip_limit)

        if name is not None and status_key(name) != column.status:
            if not name.strip():
                raise ValidationError("Column name is required")
            if await self._column_item_count(column) > 0:
                raise ValidationError("Cannot rename a column that holds items")
            key = status_key(name)
            siblings = await self.list_columns(column.project_id)
            if any(c.status == key and c.id != column.id for c in siblings):
                raise ConflictError(f"A column for status {key} already exists")
            column.name = name.strip()
            column.status = key
        elif name is not None:
            column.name = name.strip()

        if clear_wip_limit:
            column.wip_limit = None
        elif wip_limit is not None:
            column.wip_limit = wip_limit

        await self.db.commit()
        logger.info(f"Updated column {column_id}")
        return column

    async def delete_column(self, column_id: int) -> None:
        column = await self.get_column(column_id)

        if await self._column_item_count(column) > 0:
            raise ValidationError("Cannot delete column with items")

        await self.db.delete(column)
        await self.db.commit()
        logger.info(f"Deleted column {column_id}")

    # Private methods

    def _validate_wip_limit(self, wip_limit: Optional[int]) -> None:
        if wip_limit is not None and wip_limit < 1:
            raise ValidationError("WIP limit must be a positive integer")

    async def _column_item_count(self, column: KanbanColumn) -> int:
        stmt = select(func.count(BacklogItem.id)).where(
            BacklogItem.project_id == column.project_id,
            BacklogItem.status == column.status,
            BacklogItem.is_active == True
        )
        result = await self.db.execute(stmt)
        return result.scalar() or 0

    async def _count_by_item(self, model: Any, item_ids: Sequence[int]) -> Dict[int, int]:
        if not item_ids:
            return {}
        stmt = (
            select(model.backlog_item_id, func.count(model.id))
            .where(model.backlog_item_id.in_(item_ids))
            .group_by(model.backlog_item_id)
        )
        result = await self.db.execute(stmt)
        return {item_id: count for item_id, count in result.all()}
