"""
Moving and reordering backlog items.

A move takes an item out of its source partition and inserts it into the
target one; both partitions are renumbered 1..n in the same transaction.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import (
    ConflictError,
    NotFoundError,
    ServiceError,
    SprintNotFoundError,
    StaleItemError,
    ValidationError,
)
from ..models.backlog import BacklogItem, ItemStatus, HistoryAction
from ..models.sprint import Sprint, SprintStatus
from . import ordering
from .backlog_service import BacklogFilters, BacklogService
from .board_service import BoardService
from ..utils.logging import get_logger

logger = get_logger(__name__)


class MoveService:
    """
    Relocates backlog items between and within partitions.

    Every operation renumbers all affected partitions to 1..n and commits
    once, so a failure part way leaves no shifted sibling behind.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self.backlog = BacklogService(db)
        self.board = BoardService(db)

    async def move_item(
        self,
        item_id: int,
        to_status: str,
        to_position: Optional[int] = None,
        to_sprint_id: Optional[int] = None,
        expected_version: Optional[int] = None,
        user_id: Optional[int] = None
    ) -> BacklogItem:
        """Move one item to (status, position), optionally into another sprint."""

        item = await self.backlog.get_backlog_item(item_id)

        if expected_version is not None and expected_version != item.version:
            raise StaleItemError(item.id, expected_version, item.version)

        status = (to_status or item.status).upper()
        if status not in await self.board.valid_statuses(item.project_id):
            raise NotFoundError(f"Unknown status or column: {status}")

        target_sprint_id = item.sprint_id
        if to_sprint_id is not None and to_sprint_id != item.sprint_id:
            target_sprint_id = to_sprint_id

        await self._check_sprints(item, target_sprint_id)

        if (target_sprint_id is None) != (status == ItemStatus.BACKLOG.value):
            if target_sprint_id is None:
                raise ValidationError("Items outside a sprint must stay in the BACKLOG status")
            raise ValidationError("Items inside a sprint cannot use the BACKLOG status")

        from_status = item.status
        from_sprint_id = item.sprint_id
        from_position = item.position
        same_partition = (from_sprint_id, from_status) == (target_sprint_id, status)

        try:
            target = await self.backlog.partition_items(item.project_id, target_sprint_id, status, exclude_id=item.id)
            position = ordering.clamp_position(
                to_position if to_position is not None else from_position if same_partition else None,
                len(target) + 1
            )
            ordered = ordering.insert_at(target, item, position)

            item.status = status
            item.sprint_id = target_sprint_id
            self._stamp_transition(item, from_status, status)
            changed = ordering.renumber(ordered)

            if same_partition and not changed:
                logger.debug(f"Move of item {item_id} is a no-op")
                return item

            if not same_partition:
                await self.backlog.compact_partition(item.project_id, from_sprint_id, from_status, exclude_id=item.id)
                self.backlog.record_history(item.id, user_id, HistoryAction.MOVE, "status", from_status, status)
                if from_sprint_id != target_sprint_id:
                    self.backlog.record_history(
                        item.id, user_id, HistoryAction.MOVE, "sprint_id", from_sprint_id, target_sprint_id
                    )
            if from_position != item.position:
                self.backlog.record_history(
                    item.id, user_id, HistoryAction.MOVE, "position", from_position, item.position
                )

            await self.backlog.commit()

            logger.info(
                f"Moved item {item_id} from {from_status}#{from_position} "
                f"to {status}#{item.position} (sprint {target_sprint_id})"
            )
            return item

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to move item {item_id}: {str(e)}")
            if isinstance(e, ServiceError):
                raise
            raise ServiceError(f"Moving item failed: {str(e)}")

    async def reorder_backlog(
        self,
        project_id: int,
        ordered_ids: Sequence[int],
        filters: Optional[BacklogFilters] = None,
        sprint_id: Optional[int] = None,
        status: str = ItemStatus.BACKLOG.value
    ) -> List[BacklogItem]:
        """Rewrite a whole partition's order; position = index + 1."""

        if filters is not None and filters.is_active:
            raise ValidationError("Clear all filters before reordering the backlog")

        if len(set(ordered_ids)) != len(ordered_ids):
            raise ValidationError("Duplicate item ids in reorder request")

        partition = await self.backlog.partition_items(project_id, sprint_id, status)
        by_id: Dict[Any, BacklogItem] = {item.id: item for item in partition}

        if set(ordered_ids) != set(by_id):
            missing = sorted(set(by_id) - set(ordered_ids))
            unknown = sorted(set(ordered_ids) - set(by_id))
            raise ValidationError(
                "Item ids must match the partition exactly",
                {"missing_ids": missing, "unknown_ids": unknown}
            )

        try:
            ordered = [by_id[item_id] for item_id in ordered_ids]
            changed = ordering.renumber(ordered)
            await self.backlog.commit()

            logger.info(f"Reordered {len(changed)} of {len(ordered)} items in project {project_id}")
            return ordered

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to reorder backlog of project {project_id}: {str(e)}")
            if isinstance(e, ServiceError):
                raise
            raise ServiceError(f"Reordering failed: {str(e)}")

    # Private methods

    async def _check_sprints(self, item: BacklogItem, target_sprint_id: Optional[int]) -> None:
        """Completed sprints are frozen in both directions."""

        if item.sprint_id is not None:
            source = await self.db.get(Sprint, item.sprint_id)
            if source is not None and source.status == SprintStatus.COMPLETED.value:
                raise ConflictError("Cannot move items from a completed sprint")

        if target_sprint_id is not None and target_sprint_id != item.sprint_id:
            target = await self.db.get(Sprint, target_sprint_id)
            if target is None or not target.is_active or target.project_id != item.project_id:
                raise SprintNotFoundError(target_sprint_id)
            if target.status == SprintStatus.COMPLETED.value:
                raise ConflictError("Cannot move items to a completed sprint")

    def _stamp_transition(self, item: BacklogItem, from_status: str, to_status: str) -> None:
        now = datetime.now(timezone.utc)
        if to_status == ItemStatus.IN_PROGRESS.value and item.started_at is None:
            item.started_at = now
        if to_status == ItemStatus.DONE.value and from_status != ItemStatus.DONE.value:
            item.completed_at = now
        elif from_status == ItemStatus.DONE.value and to_status != ItemStatus.DONE.value:
            item.completed_at = None
