from __future__ import annotations

from typing import (
    Any,
    Dict,
    List,
    Optional,
)
from datetime import date
from enum import Enum
import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, func, desc, case
from pydantic import BaseModel

from ..core.exceptions import (
    ConflictError,
    InvalidStatusTransitionError,
    ServiceError,
    SprintNotFoundError,
    ValidationError,
)
from ..models.backlog import BacklogItem, ItemStatus
from ..models.sprint import Sprint, SprintStatus
from ..models.user import Project, ProjectStatus
from .backlog_service import BacklogService

# Type aliases
ProjectId = int
SprintId = int
BacklogItemId = int
StoryPoints = int


class UnfinishedAction(str, Enum):
    BACKLOG = "backlog"
    NEXT_SPRINT = "next_sprint"


# Pydantic models
class SprintCapacity(BaseModel):
    sprint_id: SprintId
    total: StoryPoints
    completed: StoryPoints
    remaining: StoryPoints
    progress_percentage: float


class SprintCompletionResult(BaseModel):
    sprint_id: SprintId
    actual_velocity: StoryPoints
    unfinished_handled: UnfinishedAction
    unfinished_count: int
    relocated_item_ids: List[BacklogItemId]
    next_sprint_id: Optional[SprintId] = None


class SprintItemChange(BaseModel):
    item_id: BacklogItemId
    sprint_id: Optional[SprintId]
    position: int
    remaining_capacity: Optional[StoryPoints] = None
    warning: Optional[str] = None


class SprintSummary(BaseModel):
    sprint: Dict[str, Any]
    completed_items: int
    pending_items: int


# Sprint fields a partial update may touch
UPDATABLE_FIELDS = ("name", "objective", "start_date", "end_date", "planned_velocity")

VALID_TRANSITIONS: Dict[SprintStatus, List[SprintStatus]] = {
    SprintStatus.PLANNING: [SprintStatus.ACTIVE],
    SprintStatus.ACTIVE: [SprintStatus.COMPLETED],
    SprintStatus.COMPLETED: [],
}


# Main service class
class SprintService:
    """
    Sprint lifecycle: PLANNING -> ACTIVE -> COMPLETED.

    Owns activation (one active sprint per project), completion with
    disposition of unfinished items, and capacity accounting.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self.backlog = BacklogService(db)
        self._logger = logging.getLogger(__name__)

    async def create_sprint(
        self,
        project_id: ProjectId,
        name: str,
        start_date: date,
        end_date: date,
        planned_velocity: Optional[StoryPoints] = None,
        objective: Optional[str] = None
    ) -> Sprint:
        """Create a new sprint in PLANNING."""

        self._logger.info("Creating sprint '%s' for project %d", name, project_id)

        if not name or not name.strip():
            raise ValidationError("Sprint name is required")
        self._validate_sprint_dates(start_date, end_date)
        if planned_velocity is not None and planned_velocity < 0:
            raise ValidationError("Planned velocity cannot be negative")

        try:
            if planned_velocity is None:
                planned_velocity = await self._average_velocity(project_id)

            sprint = Sprint(
                name=name.strip(),
                objective=objective,
                start_date=start_date,
                end_date=end_date,
                status=SprintStatus.PLANNING.value,
                planned_velocity=planned_velocity,
                project_id=project_id
            )

            self.db.add(sprint)
            await self.db.commit()

            self._logger.info("Created sprint %d", sprint.id)
            return sprint

        except Exception as e:
            await self.db.rollback()
            self._logger.error("Failed to create sprint: %s", str(e))
            if isinstance(e, ServiceError):
                raise
            raise ServiceError(f"Sprint creation failed: {str(e)}")

    async def get_sprint(self, sprint_id: SprintId) -> Sprint:
        """Get sprint by ID."""

        stmt = select(Sprint).where(Sprint.id == sprint_id, Sprint.is_active == True)

        result = await self.db.execute(stmt)
        sprint = result.scalar_one_or_none()

        if sprint is None:
            raise SprintNotFoundError(sprint_id)

        return sprint

    async def get_project_sprints(
        self,
        project_id: ProjectId,
        status: Optional[SprintStatus] = None
    ) -> List[SprintSummary]:
        """Get a project's sprints, newest first, with item counts."""

        done = case((BacklogItem.status == ItemStatus.DONE.value, 1), else_=0)
        pending = case((BacklogItem.status != ItemStatus.DONE.value, 1), else_=0)

        stmt = (
            select(Sprint, func.coalesce(func.sum(done), 0), func.coalesce(func.sum(pending), 0))
            .outerjoin(
                BacklogItem,
                and_(BacklogItem.sprint_id == Sprint.id, BacklogItem.is_active == True)
            )
            .where(Sprint.project_id == project_id, Sprint.is_active == True)
            .group_by(Sprint.id)
            .order_by(desc(Sprint.start_date), desc(Sprint.id))
        )

        if status is not None:
            stmt = stmt.where(Sprint.status == status.value)

        result = await self.db.execute(stmt)
        return [
            SprintSummary(
                sprint=sprint_to_dict(sprint),
                completed_items=int(completed),
                pending_items=int(remaining)
            )
            for sprint, completed, remaining in result.all()
        ]

    async def get_active_sprint(self, project_id: ProjectId) -> Optional[Sprint]:
        stmt = select(Sprint).where(
            Sprint.project_id == project_id,
            Sprint.status == SprintStatus.ACTIVE.value,
            Sprint.is_active == True
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def update_sprint(self, sprint_id: SprintId, patch: Dict[str, Any]) -> Sprint:
        """Update planning data; status only changes through activate/complete."""

        unknown = set(patch) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update {', '.join(sorted(unknown))}")

        sprint = await self.get_sprint(sprint_id)
        if sprint.status == SprintStatus.COMPLETED.value:
            raise ConflictError("Cannot modify a completed sprint")

        if "name" in patch and (not patch["name"] or not patch["name"].strip()):
            raise ValidationError("Sprint name is required")
        if patch.get("planned_velocity") is not None and patch["planned_velocity"] < 0:
            raise ValidationError("Planned velocity cannot be negative")
        if "planned_velocity" in patch and patch["planned_velocity"] is None:
            raise ValidationError("Planned velocity cannot be empty")

        for field in ("start_date", "end_date"):
            if field in patch and patch[field] is None:
                raise ValidationError(f"{field} cannot be empty")

        self._validate_sprint_dates(
            patch.get("start_date", sprint.start_date),
            patch.get("end_date", sprint.end_date)
        )

        try:
            for key, value in patch.items():
                setattr(sprint, key, value)

            await self.db.commit()

            self._logger.info("Updated sprint %d: %s", sprint_id, sorted(patch))
            return sprint

        except Exception as e:
            await self.db.rollback()
            self._logger.error("Failed to update sprint %d: %s", sprint_id, str(e))
            if isinstance(e, ServiceError):
                raise
            raise ServiceError(f"Sprint update failed: {str(e)}")

    async def delete_sprint(self, sprint_id: SprintId) -> None:
        """Soft-delete a sprint that is neither active nor holding items."""

        sprint = await self.get_sprint(sprint_id)

        if sprint.status == SprintStatus.ACTIVE.value:
            raise ConflictError("Cannot delete an active sprint")

        if await self.backlog.list_by_sprint(sprint_id):
            raise ConflictError("Cannot delete a sprint that still holds items")

        sprint.is_active = False
        await self.db.commit()

        self._logger.info("Deleted sprint %d", sprint_id)

    async def activate(self, sprint_id: SprintId) -> Sprint:
        """PLANNING -> ACTIVE; at most one active sprint per project."""

        sprint = await self.get_sprint(sprint_id)
        self._check_transition(sprint, SprintStatus.ACTIVE)

        active = await self.get_active_sprint(sprint.project_id)
        if active is not None:
            raise ConflictError(
                "Another sprint is already active for this project",
                {"active_sprint_id": active.id}
            )

        try:
            sprint.status = SprintStatus.ACTIVE.value

            project = await self.db.get(Project, sprint.project_id)
            if project is not None:
                project.status = ProjectStatus.ACTIVE.value

            await self.db.commit()

            self._logger.info("Activated sprint %d", sprint_id)
            return sprint

        except Exception as e:
            await self.db.rollback()
            self._logger.error("Failed to activate sprint %d: %s", sprint_id, str(e))
            if isinstance(e, ServiceError):
                raise
            raise ServiceError(f"Sprint activation failed: {str(e)}")

    async def complete(
        self,
        sprint_id: SprintId,
        unfinished_action: UnfinishedAction | str = UnfinishedAction.BACKLOG,
        next_sprint_id: Optional[SprintId] = None
    ) -> SprintCompletionResult:
        """ACTIVE -> COMPLETED, relocating every item that is not DONE."""

        try:
            action = UnfinishedAction(unfinished_action)
        except ValueError:
            raise ValidationError(
                f"unfinished_action must be one of: {', '.join(a.value for a in UnfinishedAction)}"
            )

        sprint = await self.get_sprint(sprint_id)
        self._check_transition(sprint, SprintStatus.COMPLETED)

        target_sprint_id: Optional[SprintId] = None
        target_status = ItemStatus.BACKLOG.value
        if action == UnfinishedAction.NEXT_SPRINT:
            next_sprint = await self._get_successor(sprint, next_sprint_id)
            target_sprint_id = next_sprint.id
            target_status = ItemStatus.TODO.value

        try:
            items = await self.backlog.list_by_sprint(sprint_id)
            velocity = sum(
                item.story_points or 0
                for item in items
                if item.status == ItemStatus.DONE.value
            )
            unfinished = [item for item in items if item.status != ItemStatus.DONE.value]

            relocated: List[BacklogItemId] = []
            for item in unfinished:
                await self.backlog.append_to_partition(item, target_sprint_id, target_status)
                relocated.append(item.id)

            sprint.status = SprintStatus.COMPLETED.value
            sprint.actual_velocity = velocity

            await self.backlog.commit()

            self._logger.info(
                "Completed sprint %d: velocity %d, %d unfinished items -> %s",
                sprint_id, velocity, len(relocated), action.value
            )
            return SprintCompletionResult(
                sprint_id=sprint_id,
                actual_velocity=velocity,
                unfinished_handled=action,
                unfinished_count=len(relocated),
                relocated_item_ids=relocated,
                next_sprint_id=target_sprint_id
            )

        except Exception as e:
            await self.db.rollback()
            self._logger.error("Failed to complete sprint %d: %s", sprint_id, str(e))
            if isinstance(e, ServiceError):
                raise
            raise ServiceError(f"Sprint completion failed: {str(e)}")

    async def capacity(self, sprint_id: SprintId) -> SprintCapacity:
        """Planned velocity against story points already DONE."""

        sprint = await self.get_sprint(sprint_id)

        stmt = select(func.coalesce(func.sum(BacklogItem.story_points), 0)).where(
            and_(
                BacklogItem.sprint_id == sprint_id,
                BacklogItem.status == ItemStatus.DONE.value,
                BacklogItem.is_active == True
            )
        )
        result = await self.db.execute(stmt)
        completed = int(result.scalar() or 0)
        total = int(sprint.planned_velocity or 0)

        return SprintCapacity(
            sprint_id=sprint_id,
            total=total,
            completed=completed,
            remaining=total - completed,
            progress_percentage=self._calculate_progress(completed, total)
        )

    async def add_item(self, sprint_id: SprintId, item_id: BacklogItemId) -> SprintItemChange:
        """Pull a product-backlog item into the sprint's TODO column."""

        sprint = await self.get_sprint(sprint_id)
        if sprint.status == SprintStatus.COMPLETED.value:
            raise ConflictError("Cannot assign items to a completed sprint")

        item = await self.backlog.get_backlog_item(item_id)
        if item.project_id != sprint.project_id:
            raise ValidationError("Item belongs to another project")
        if item.sprint_id is not None:
            raise ValidationError("Item already assigned to a sprint")

        try:
            current_points = sum(i.story_points or 0 for i in await self.backlog.list_by_sprint(sprint_id))
            new_total = current_points + (item.story_points or 0)

            warning = None
            if new_total > (sprint.planned_velocity or 0):
                warning = (
                    f"Adding this item will exceed sprint capacity "
                    f"({new_total}/{sprint.planned_velocity} story points)"
                )

            position = await self.backlog.append_to_partition(item, sprint_id, ItemStatus.TODO.value)
            await self.backlog.commit()

            self._logger.info("Added item %d to sprint %d", item_id, sprint_id)
            return SprintItemChange(
                item_id=item_id,
                sprint_id=sprint_id,
                position=position,
                remaining_capacity=(sprint.planned_velocity or 0) - new_total,
                warning=warning
            )

        except Exception as e:
            await self.db.rollback()
            self._logger.error("Failed to add item %d to sprint %d: %s", item_id, sprint_id, str(e))
            if isinstance(e, ServiceError):
                raise
            raise ServiceError(f"Adding item to sprint failed: {str(e)}")

    async def remove_item(self, sprint_id: SprintId, item_id: BacklogItemId) -> SprintItemChange:
        """Send a sprint item back to the end of the product backlog."""

        sprint = await self.get_sprint(sprint_id)
        if sprint.status == SprintStatus.COMPLETED.value:
            raise ConflictError("Cannot remove items from a completed sprint")

        item = await self.backlog.get_backlog_item(item_id)
        if item.sprint_id != sprint_id:
            raise ValidationError("Item not in this sprint")

        try:
            position = await self.backlog.append_to_partition(item, None, ItemStatus.BACKLOG.value)
            await self.backlog.commit()

            self._logger.info("Removed item %d from sprint %d", item_id, sprint_id)
            return SprintItemChange(item_id=item_id, sprint_id=None, position=position)

        except Exception as e:
            await self.db.rollback()
            self._logger.error("Failed to remove item %d from sprint %d: %s", item_id, sprint_id, str(e))
            if isinstance(e, ServiceError):
                raise
            raise ServiceError(f"Removing item from sprint failed: {str(e)}")

    # Private methods

    def _validate_sprint_dates(self, start_date: date, end_date: date) -> None:
        """Validate sprint dates."""

        if start_date >= end_date:
            raise ValidationError("Start date must be before end date")

    def _check_transition(self, sprint: Sprint, new: SprintStatus) -> None:
        current = SprintStatus(sprint.status)
        if not self._is_valid_status_transition(current, new):
            raise InvalidStatusTransitionError(current.value, new.value)

    def _is_valid_status_transition(self, current: SprintStatus, new: SprintStatus) -> bool:
        """Check valid status transitions."""
        return new in VALID_TRANSITIONS.get(current, [])

    async def _get_successor(self, sprint: Sprint, next_sprint_id: Optional[SprintId]) -> Sprint:
        if next_sprint_id is None:
            raise ValidationError("next_sprint_id is required when moving items to the next sprint")
        if next_sprint_id == sprint.id:
            raise ValidationError("A sprint cannot be its own successor")

        next_sprint = await self.get_sprint(next_sprint_id)
        if next_sprint.project_id != sprint.project_id:
            raise ValidationError("Successor sprint belongs to another project")
        if next_sprint.status == SprintStatus.COMPLETED.value:
            raise ConflictError("Cannot move items to a completed sprint")

        return next_sprint

    async def _average_velocity(self, project_id: ProjectId) -> StoryPoints:
        """Rounded average velocity of the project's completed sprints."""

        stmt = select(func.avg(Sprint.actual_velocity)).where(
            and_(
                Sprint.project_id == project_id,
                Sprint.status == SprintStatus.COMPLETED.value,
                Sprint.actual_velocity > 0,
                Sprint.is_active == True
            )
        )
        result = await self.db.execute(stmt)
        average = result.scalar()
        return int(round(average)) if average else 0

    def _calculate_progress(self, completed: StoryPoints, total: StoryPoints) -> float:
        """Calculate completion percentage."""

        if total == 0:
            return 0.0

        return round((completed / total) * 100, 1)


def sprint_to_dict(sprint: Sprint) -> Dict[str, Any]:
    """Convert Sprint model to a JSON-friendly dictionary."""
    return {
        "id": sprint.id,
        "project_id": sprint.project_id,
        "name": sprint.name,
        "objective": sprint.objective,
        "start_date": sprint.start_date.isoformat(),
        "end_date": sprint.end_date.isoformat(),
        "status": sprint.status,
        "planned_velocity": sprint.planned_velocity,
        "actual_velocity": sprint.actual_velocity,
        "created_at": sprint.created_at.isoformat() if sprint.created_at else None,
        "updated_at": sprint.updated_at.isoformat() if sprint.updated_at else None
    }


__all__ = [
    "SprintService",
    "UnfinishedAction",
    "SprintCapacity",
    "SprintCompletionResult",
    "SprintItemChange",
    "SprintSummary",
    "sprint_to_dict",
]
