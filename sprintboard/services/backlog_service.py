from typing import Any, Dict, List, Literal, Optional, Sequence, Union
from datetime import date
from enum import Enum
import json

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, case, func
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from ..core.exceptions import (
    BacklogItemNotFoundError,
    ConflictError,
    NotFoundError,
    ServiceError,
    SprintNotFoundError,
    ValidationError,
)
from ..models.backlog import (
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
from ..models.sprint import Sprint, SprintStatus
from ..models.user import ProjectMembership
from . import ordering
from ..utils.logging import get_logger

logger = get_logger(__name__)

UNASSIGNED = "unassigned"
PRODUCT_BACKLOG = "backlog"

# Fields a partial update may touch; status, position and sprint go through MoveService
PATCHABLE_FIELDS = (
    "title",
    "description",
    "type",
    "priority",
    "story_points",
    "tags",
    "assigned_to_id",
    "due_date",
    "is_blocked",
)


class SortField(str, Enum):
    POSITION = "position"
    PRIORITY = "priority"
    STORY_POINTS = "story_points"
    CREATED_AT = "created_at"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class BacklogFilters(BaseModel):
    """Optional filters for backlog listings; all set filters must match"""

    type: Optional[ItemType] = None
    priority: Optional[ItemPriority] = None
    tags: List[str] = Field(default_factory=list)
    assigned_to_id: Optional[Union[int, Literal["unassigned"]]] = None
    sprint_id: Optional[Union[int, Literal["backlog"]]] = None
    status: Optional[str] = None
    search: Optional[str] = None

    @field_validator("assigned_to_id", mode="before")
    @classmethod
    def _null_means_unassigned(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() in ("null", "none", ""):
            return UNASSIGNED
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        return value

    @field_validator("search", "status")
    @classmethod
    def _blank_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def is_active(self) -> bool:
        """True when at least one filter narrows the listing"""
        return any([
            self.type is not None,
            self.priority is not None,
            bool(self.tags),
            self.assigned_to_id is not None,
            self.sprint_id is not None,
            self.status is not None,
            self.search is not None,
        ])


class BacklogSort(BaseModel):
    sort_by: SortField = SortField.POSITION
    sort_order: SortOrder = SortOrder.ASC


def matches_tags(item: BacklogItem, tags: Sequence[str]) -> bool:
    """Any-of tag match, case-insensitive"""
    if not tags:
        return True
    wanted = {tag.lower() for tag in tags}
    return any(str(tag).lower() in wanted for tag in (item.tags or []))


def matches_search(item: BacklogItem, search: Optional[str]) -> bool:
    if not search:
        return True
    needle = search.lower()
    haystack = [item.title or "", item.description or ""] + [str(tag) for tag in (item.tags or [])]
    return any(needle in text.lower() for text in haystack)


def validate_item_fields(data: Dict[str, Any]) -> None:
    """Validate the item fields present in `data`; raises ValidationError"""

    if "title" in data:
        title = data["title"]
        if not title or not isinstance(title, str):
            raise ValidationError("Title is required")
        if not settings.title_min_length <= len(title.strip()) <= settings.title_max_length:
            raise ValidationError(
                f"Title must be {settings.title_min_length}-{settings.title_max_length} characters"
            )

    description = data.get("description")
    if description and len(description) > settings.description_max_length:
        raise ValidationError(f"Description max {settings.description_max_length} characters")

    # Required columns: an explicit null is invalid
    if "type" in data and data["type"] not in {t.value for t in ItemType}:
        raise ValidationError(f"Invalid type: {data['type']}")

    if "priority" in data and data["priority"] not in PRIORITY_RANK:
        raise ValidationError(f"Invalid priority: {data['priority']}")

    if "story_points" in data:
        points = data["story_points"]
        if points is not None and (isinstance(points, bool) or points not in FIBONACCI_POINTS):
            raise ValidationError(
                "Story points must be a Fibonacci number (1,2,3,5,8,13,21)"
            )

    if "tags" in data and data["tags"] is not None:
        tags = data["tags"]
        if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
            raise ValidationError("Tags must be a list of strings")

    if "is_blocked" in data and not isinstance(data["is_blocked"], bool):
        raise ValidationError("is_blocked must be a boolean")


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _history_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    if isinstance(value, date):
        return value.isoformat()
    return str(_enum_value(value))


class BacklogService:
    """Service for backlog items and the ordering of their partitions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # Partition primitives, shared with SprintService and MoveService

    async def partition_items(
        self,
        project_id: int,
        sprint_id: Optional[int],
        status: str,
        exclude_id: Optional[int] = None
    ) -> List[BacklogItem]:
        """Active items of one partition in stable position order"""

        stmt = select(BacklogItem).where(
            BacklogItem.project_id == project_id,
            BacklogItem.status == status,
            BacklogItem.is_active == True
        )
        if sprint_id is None:
            stmt = stmt.where(BacklogItem.sprint_id.is_(None))
        else:
            stmt = stmt.where(BacklogItem.sprint_id == sprint_id)
        if exclude_id is not None:
            stmt = stmt.where(BacklogItem.id != exclude_id)

        result = await self.db.execute(stmt)
        return ordering.stable_sort(list(result.scalars().all()))

    async def compact_partition(
        self,
        project_id: int,
        sprint_id: Optional[int],
        status: str,
        exclude_id: Optional[int] = None
    ) -> Dict[int, Any]:
        """Close gaps left in a partition; returns the renumbered positions"""

        siblings = await self.partition_items(project_id, sprint_id, status, exclude_id)
        return ordering.renumber(siblings)

    async def append_to_partition(
        self,
        item: BacklogItem,
        sprint_id: Optional[int],
        status: str
    ) -> int:
        """Place `item` last in the target partition and compact the one it leaves"""

        source = (item.sprint_id, item.status)
        target = await self.partition_items(item.project_id, sprint_id, status, exclude_id=item.id)

        item.sprint_id = sprint_id
        item.status = status
        item.position = ordering.next_position(target)

        if source != (sprint_id, status) and item.id is not None:
            await self.compact_partition(item.project_id, source[0], source[1], exclude_id=item.id)

        return item.position

    def record_history(
        self,
        item_id: int,
        user_id: Optional[int],
        action: HistoryAction,
        field: Optional[str] = None,
        old_value: Any = None,
        new_value: Any = None
    ) -> None:
        self.db.add(ItemHistory(
            backlog_item_id=item_id,
            user_id=user_id,
            action=action.value,
            field_changed=field,
            old_value=_history_value(old_value),
            new_value=_history_value(new_value)
        ))

    async def commit(self) -> None:
        """Commit the unit of work, turning version clashes into conflicts"""
        try:
            await self.db.commit()
        except StaleDataError as e:
            await self.db.rollback()
            logger.warning(f"Concurrent modification detected: {str(e)}")
            raise ConflictError("Backlog was modified concurrently; reload and retry")

    # Item Store

    async def get_backlog_item(self, item_id: int) -> BacklogItem:
        """Get an active backlog item by ID"""

        stmt = select(BacklogItem).where(BacklogItem.id == item_id, BacklogItem.is_active == True)
        result = await self.db.execute(stmt)
        item = result.scalar_one_or_none()

        if item is None:
            raise BacklogItemNotFoundError(item_id)

        return item

    async def create_item(
        self,
        project_id: int,
        title: str,
        creator_id: Optional[int] = None,
        description: Optional[str] = None,
        type: Union[ItemType, str] = ItemType.USER_STORY,
        priority: Union[ItemPriority, str] = ItemPriority.MEDIUM,
        story_points: Optional[int] = None,
        tags: Optional[List[str]] = None,
        assigned_to_id: Optional[int] = None,
        due_date: Optional[date] = None,
        sprint_id: Optional[int] = None,
        is_blocked: bool = False
    ) -> BacklogItem:
        """Create a backlog item appended at the end of its partition"""

        fields = {
            "title": title,
            "description": description,
            "type": _enum_value(type) or ItemType.USER_STORY.value,
            "priority": _enum_value(priority) or ItemPriority.MEDIUM.value,
            "story_points": story_points,
            "tags": tags or [],
            "is_blocked": is_blocked,
        }
        validate_item_fields(fields)
        fields["title"] = fields["title"].strip()

        status = ItemStatus.BACKLOG.value
        if sprint_id is not None:
            sprint = await self._get_project_sprint(project_id, sprint_id)
            if sprint.status == SprintStatus.COMPLETED.value:
                raise ConflictError("Cannot assign items to a completed sprint")
            status = ItemStatus.TODO.value

        if assigned_to_id is not None:
            await self._validate_assignee(project_id, assigned_to_id)

        try:
            partition = await self.partition_items(project_id, sprint_id, status)
            item = BacklogItem(
                project_id=project_id,
                sprint_id=sprint_id,
                status=status,
                position=ordering.next_position(partition),
                assigned_to_id=assigned_to_id,
                created_by_id=creator_id,
                due_date=due_date,
                **fields
            )
            self.db.add(item)
            await self.db.flush()

            self.record_history(item.id, creator_id, HistoryAction.CREATE)
            await self.commit()

            logger.info(f"Created backlog item {item.id} in project {project_id} at position {item.position}")
            return item

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to create backlog item: {str(e)}")
            if isinstance(e, ServiceError):
                raise
            raise ServiceError(f"Creating backlog item failed: {str(e)}")

    async def update_fields(
        self,
        item_id: int,
        patch: Dict[str, Any],
        user_id: Optional[int] = None
    ) -> BacklogItem:
        """Apply a partial update; never touches status, position or sprint"""

        unknown = set(patch) - set(PATCHABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Cannot update {', '.join(sorted(unknown))} here; use the board move endpoint for status and position"
            )

        item = await self.get_backlog_item(item_id)

        values = {key: _enum_value(value) for key, value in patch.items()}
        validate_item_fields(values)
        if "title" in values:
            values["title"] = values["title"].strip()

        if values.get("assigned_to_id") is not None:
            await self._validate_assignee(item.project_id, values["assigned_to_id"])

        try:
            changed = []
            for key, value in values.items():
                if key == "tags" and value is None:
                    value = []
                current = getattr(item, key)
                if current == value:
                    continue
                self.record_history(item.id, user_id, HistoryAction.UPDATE, key, current, value)
                setattr(item, key, value)
                changed.append(key)

            await self.commit()

            if changed:
                logger.info(f"Updated backlog item {item_id}: {changed}")
            return item

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to update backlog item {item_id}: {str(e)}")
            if isinstance(e, ServiceError):
                raise
            raise ServiceError(f"Updating backlog item failed: {str(e)}")

    async def delete_item(self, item_id: int, user_id: Optional[int] = None) -> None:
        """Soft-delete an item and compact the partition it leaves"""

        item = await self.get_backlog_item(item_id)

        try:
            item.is_active = False
            await self.compact_partition(item.project_id, item.sprint_id, item.status, exclude_id=item.id)
            self.record_history(item.id, user_id, HistoryAction.DELETE)
            await self.commit()

            logger.info(f"Deleted backlog item {item_id}")

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to delete backlog item {item_id}: {str(e)}")
            raise

    async def assign_member(
        self,
        item_id: int,
        assignee_id: Optional[int],
        user_id: Optional[int] = None
    ) -> BacklogItem:
        """Change (or clear) the assignee of an item"""

        item = await self.get_backlog_item(item_id)

        if assignee_id is not None:
            await self._validate_assignee(item.project_id, assignee_id)

        if item.assigned_to_id == assignee_id:
            return item

        try:
            self.record_history(
                item.id, user_id, HistoryAction.ASSIGN, "assigned_to_id", item.assigned_to_id, assignee_id
            )
            item.assigned_to_id = assignee_id
            await self.commit()

            logger.info(f"Assigned backlog item {item_id} to {assignee_id}")
            return item

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to assign backlog item {item_id}: {str(e)}")
            raise

    async def list_by_project(
        self,
        project_id: int,
        filters: Optional[BacklogFilters] = None,
        sort: Optional[BacklogSort] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[BacklogItem]:
        """Get a project's backlog items, filtered and sorted"""

        filters = filters or BacklogFilters()
        sort = sort or BacklogSort()

        stmt = select(BacklogItem).where(
            BacklogItem.project_id == project_id,
            BacklogItem.is_active == True
        )

        if filters.type is not None:
            stmt = stmt.where(BacklogItem.type == filters.type.value)

        if filters.priority is not None:
            stmt = stmt.where(BacklogItem.priority == filters.priority.value)

        if filters.status is not None:
            stmt = stmt.where(BacklogItem.status == filters.status.upper())

        if filters.assigned_to_id == UNASSIGNED:
            stmt = stmt.where(BacklogItem.assigned_to_id.is_(None))
        elif filters.assigned_to_id is not None:
            stmt = stmt.where(BacklogItem.assigned_to_id == filters.assigned_to_id)

        if filters.sprint_id == PRODUCT_BACKLOG:
            stmt = stmt.where(BacklogItem.sprint_id.is_(None))
        elif filters.sprint_id is not None:
            stmt = stmt.where(BacklogItem.sprint_id == filters.sprint_id)

        sort_columns = {
            SortField.POSITION: BacklogItem.position,
            SortField.PRIORITY: case(PRIORITY_RANK, value=BacklogItem.priority, else_=0),
            SortField.STORY_POINTS: func.coalesce(BacklogItem.story_points, 0),
            SortField.CREATED_AT: BacklogItem.created_at,
        }
        key = sort_columns[sort.sort_by]
        key = key.desc() if sort.sort_order == SortOrder.DESC else key.asc()
        stmt = stmt.order_by(key, BacklogItem.position.asc(), BacklogItem.id.asc())

        result = await self.db.execute(stmt)
        items = [
            item for item in result.scalars().all()
            if matches_tags(item, filters.tags) and matches_search(item, filters.search)
        ]

        if limit is not None:
            return items[offset:offset + limit]
        return items[offset:]

    async def list_by_sprint(self, sprint_id: int) -> List[BacklogItem]:
        """Get a sprint's items ordered by status, then position"""

        stmt = (
            select(BacklogItem)
            .where(BacklogItem.sprint_id == sprint_id, BacklogItem.is_active == True)
            .order_by(BacklogItem.status, BacklogItem.position, BacklogItem.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # Acceptance criteria

    async def list_criteria(self, item_id: int) -> List[AcceptanceCriterion]:
        await self.get_backlog_item(item_id)
        stmt = (
            select(AcceptanceCriterion)
            .where(AcceptanceCriterion.backlog_item_id == item_id)
            .order_by(AcceptanceCriterion.created_at, AcceptanceCriterion.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def add_criterion(self, item_id: int, description: str) -> AcceptanceCriterion:
        await self.get_backlog_item(item_id)
        if not description or not description.strip():
            raise ValidationError("Description required")

        criterion = AcceptanceCriterion(backlog_item_id=item_id, description=description.strip())
        self.db.add(criterion)
        await self.db.commit()
        return criterion

    async def update_criterion(
        self,
        item_id: int,
        criterion_id: int,
        description: Optional[str] = None,
        is_completed: Optional[bool] = None
    ) -> AcceptanceCriterion:
        criterion = await self._get_criterion(item_id, criterion_id)

        if description is not None:
            if not description.strip():
                raise ValidationError("Description required")
            criterion.description = description.strip()
        if is_completed is not None:
            criterion.is_completed = is_completed

        await self.db.commit()
        return criterion

    async def delete_criterion(self, item_id: int, criterion_id: int) -> None:
        criterion = await self._get_criterion(item_id, criterion_id)
        await self.db.delete(criterion)
        await self.db.commit()

    # Comments and attachments

    async def list_comments(self, item_id: int) -> List[ItemComment]:
        await self.get_backlog_item(item_id)
        stmt = (
            select(ItemComment)
            .where(ItemComment.backlog_item_id == item_id)
            .order_by(ItemComment.created_at, ItemComment.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def add_comment(self, item_id: int, author_id: int, content: str) -> ItemComment:
        await self.get_backlog_item(item_id)
        if not content or not content.strip():
            raise ValidationError("Comment content required")

        comment = ItemComment(backlog_item_id=item_id, author_id=author_id, content=content.strip())
        self.db.add(comment)
        await self.db.commit()
        return comment

    async def list_attachments(self, item_id: int) -> List[ItemAttachment]:
        await self.get_backlog_item(item_id)
        stmt = (
            select(ItemAttachment)
            .where(ItemAttachment.backlog_item_id == item_id)
            .order_by(ItemAttachment.created_at, ItemAttachment.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def add_attachment(
        self,
        item_id: int,
        uploaded_by_id: int,
        filename: str,
        mime_type: Optional[str] = None,
        size: Optional[int] = None,
        url: Optional[str] = None
    ) -> ItemAttachment:
        """Register attachment metadata; file storage is handled elsewhere"""
        await self.get_backlog_item(item_id)
        if not filename:
            raise ValidationError("Filename required")

        attachment = ItemAttachment(
            backlog_item_id=item_id,
            uploaded_by_id=uploaded_by_id,
            filename=filename,
            mime_type=mime_type,
            size=size,
            url=url
        )
        self.db.add(attachment)
        await self.db.commit()
        return attachment

    async def delete_attachment(self, item_id: int, attachment_id: int) -> None:
        await self.get_backlog_item(item_id)
        attachment = await self.db.get(ItemAttachment, attachment_id)
        if attachment is None or attachment.backlog_item_id != item_id:
            raise NotFoundError(f"Attachment {attachment_id} not found")

        await self.db.delete(attachment)
        await self.db.commit()

    async def get_history(self, item_id: int) -> List[ItemHistory]:
        """Change history of an item, newest first"""
        if await self.db.get(BacklogItem, item_id) is None:
            raise BacklogItemNotFoundError(item_id)

        stmt = (
            select(ItemHistory)
            .where(ItemHistory.backlog_item_id == item_id)
            .order_by(ItemHistory.created_at.desc(), ItemHistory.id.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # Private methods

    async def _get_project_sprint(self, project_id: int, sprint_id: int) -> Sprint:
        sprint = await self.db.get(Sprint, sprint_id)
        if sprint is None or not sprint.is_active or sprint.project_id != project_id:
            raise SprintNotFoundError(sprint_id)
        return sprint

    async def _validate_assignee(self, project_id: int, user_id: int) -> None:
        stmt = select(ProjectMembership.id).where(
            ProjectMembership.project_id == project_id,
            ProjectMembership.user_id == user_id
        )
        result = await self.db.execute(stmt)
        if result.scalar_one_or_none() is None:
            raise ValidationError("User is not a member of this project")

    async def _get_criterion(self, item_id: int, criterion_id: int) -> AcceptanceCriterion:
        criterion = await self.db.get(AcceptanceCriterion, criterion_id)
        if criterion is None or criterion.backlog_item_id != item_id:
            raise NotFoundError(f"Acceptance criterion {criterion_id} not found")
        return criterion
