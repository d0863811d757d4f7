"""Tests for MoveService: board moves and whole-partition reorders."""

from __future__ import annotations

import pytest
import pytest_asyncio

from sprintboard.core.exceptions import (
    BacklogItemNotFoundError,
    ConflictError,
    NotFoundError,
    SprintNotFoundError,
    StaleItemError,
    ValidationError,
)
from sprintboard.models import HistoryAction, ItemStatus
from sprintboard.services import ordering
from sprintboard.services.backlog_service import BacklogFilters, BacklogService
from sprintboard.services.board_service import BoardService
from sprintboard.services.move_service import MoveService
from sprintboard.services.project_service import ProjectService
from sprintboard.services.sprint_service import SprintService


@pytest.fixture
def mover(db):
    return MoveService(db)


@pytest_asyncio.fixture
async def sprint_abc(make_sprint, make_item):
    """An active sprint whose TODO column holds A, B, C in that order."""
    sprint = await make_sprint(activate=True)
    items = {}
    for name in "ABC":
        items[name] = await make_item(f"Sprint story {name}", sprint_id=sprint.id)
    return sprint, items


async def _column(db, project_id, sprint_id, status=ItemStatus.TODO.value):
    items = await BacklogService(db).partition_items(project_id, sprint_id, status)
    assert ordering.is_dense([item.position for item in items])
    return [item.title[-1] for item in items]


async def _moves(db, item_id):
    history = await BacklogService(db).get_history(item_id)
    return [h for h in history if h.action == HistoryAction.MOVE.value]


# ---------------------------------------------------------------------------
# Moves within a column
# ---------------------------------------------------------------------------
class TestReorderWithinColumn:
    @pytest.mark.asyncio
    async def test_move_to_zero_goes_to_top(self, db, mover, project, sprint_abc):
        sprint, items = sprint_abc
        moved = await mover.move_item(items["C"].id, "TODO", 0)

        assert moved.position == 1
        assert await _column(db, project.id, sprint.id) == ["C", "A", "B"]

    @pytest.mark.asyncio
    async def test_move_down(self, db, mover, project, sprint_abc):
        sprint, items = sprint_abc
        await mover.move_item(items["A"].id, "TODO", 2)
        assert await _column(db, project.id, sprint.id) == ["B", "A", "C"]

    @pytest.mark.asyncio
    async def test_past_the_end_means_bottom(self, db, mover, project, sprint_abc):
        sprint, items = sprint_abc
        moved = await mover.move_item(items["A"].id, "todo", 50)
        assert moved.position == 3
        assert await _column(db, project.id, sprint.id) == ["B", "C", "A"]

    @pytest.mark.asyncio
    async def test_move_to_current_place_is_a_noop(self, db, mover, project, sprint_abc):
        sprint, items = sprint_abc
        before = {name: item.version for name, item in items.items()}

        moved = await mover.move_item(items["B"].id, "TODO", 2)

        assert moved.position == 2
        assert {name: item.version for name, item in items.items()} == before
        assert await _column(db, project.id, sprint.id) == ["A", "B", "C"]
        assert await _moves(db, items["B"].id) == []

    @pytest.mark.asyncio
    async def test_position_history(self, db, mover, sprint_abc):
        _, items = sprint_abc
        await mover.move_item(items["C"].id, "TODO", 1)
        moves = await _moves(db, items["C"].id)
        assert [(m.field_changed, m.old_value, m.new_value) for m in moves] == [("position", "3", "1")]


# ---------------------------------------------------------------------------
# Moves across columns and sprints
# ---------------------------------------------------------------------------
class TestMoveAcrossColumns:
    @pytest.mark.asyncio
    async def test_both_columns_stay_dense(self, db, mover, project, sprint_abc):
        sprint, items = sprint_abc
        await mover.move_item(items["C"].id, "IN_PROGRESS")
        moved = await mover.move_item(items["A"].id, "IN_PROGRESS", 1)

        assert moved.status == ItemStatus.IN_PROGRESS.value
        assert await _column(db, project.id, sprint.id) == ["B"]
        assert await _column(db, project.id, sprint.id, "IN_PROGRESS") == ["A", "C"]

    @pytest.mark.asyncio
    async def test_items_are_conserved(self, db, mover, project, sprint_abc):
        sprint, items = sprint_abc
        await mover.move_item(items["B"].id, "DONE")
        await mover.move_item(items["A"].id, "IN_PROGRESS", 3)
        await mover.move_item(items["B"].id, "IN_PROGRESS", 1)

        board = await BoardService(db).get_board(sprint.id)
        ids = sorted(card.id for column in board.columns for card in column.items)
        assert ids == sorted(item.id for item in items.values())

    @pytest.mark.asyncio
    async def test_timestamps_follow_status(self, mover, sprint_abc):
        _, items = sprint_abc
        moved = await mover.move_item(items["A"].id, "IN_PROGRESS")
        started = moved.started_at
        assert started is not None and moved.completed_at is None

        moved = await mover.move_item(items["A"].id, "DONE")
        assert moved.completed_at is not None
        assert moved.started_at == started

        moved = await mover.move_item(items["A"].id, "IN_PROGRESS")
        assert moved.completed_at is None

    @pytest.mark.asyncio
    async def test_status_history(self, db, mover, sprint_abc):
        _, items = sprint_abc
        await mover.move_item(items["B"].id, "DONE", user_id=None)
        moves = await _moves(db, items["B"].id)
        assert ("status", "TODO", "DONE") in [(m.field_changed, m.old_value, m.new_value) for m in moves]

    @pytest.mark.asyncio
    async def test_backlog_item_into_sprint(self, db, mover, project, make_sprint, make_item):
        sprint = await make_sprint()
        await make_item("Backlog story A")
        pulled = await make_item("Backlog story B")
        await make_item("Backlog story C")

        moved = await mover.move_item(pulled.id, "TODO", 1, to_sprint_id=sprint.id)

        assert (moved.sprint_id, moved.status, moved.position) == (sprint.id, "TODO", 1)
        assert await _column(db, project.id, None, ItemStatus.BACKLOG.value) == ["A", "C"]
        moves = await _moves(db, pulled.id)
        assert "sprint_id" in {m.field_changed for m in moves}

    @pytest.mark.asyncio
    async def test_between_sprints(self, db, mover, project, make_sprint, make_item):
        source = await make_sprint()
        target = await make_sprint()
        item = await make_item("Sprint story X", sprint_id=source.id)
        await make_item("Sprint story Y", sprint_id=target.id)

        await mover.move_item(item.id, "TODO", 1, to_sprint_id=target.id)

        assert await _column(db, project.id, source.id) == []
        assert await _column(db, project.id, target.id) == ["X", "Y"]

    @pytest.mark.asyncio
    async def test_custom_column_status(self, db, mover, project, sprint_abc):
        sprint, items = sprint_abc
        await BoardService(db).create_column(project.id, "Code Review", wip_limit=1)
        await mover.move_item(items["A"].id, "CODE_REVIEW")
        moved = await mover.move_item(items["B"].id, "code_review")
        # WIP limits are advisory
        assert moved.status == "CODE_REVIEW"
        assert await _column(db, project.id, sprint.id, "CODE_REVIEW") == ["A", "B"]


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------
class TestMoveRejections:
    @pytest.mark.asyncio
    async def test_unknown_item(self, mover, project):
        with pytest.raises(BacklogItemNotFoundError):
            await mover.move_item(999, "TODO")

    @pytest.mark.asyncio
    async def test_unknown_status(self, mover, sprint_abc):
        _, items = sprint_abc
        with pytest.raises(NotFoundError):
            await mover.move_item(items["A"].id, "ARCHIVED")

    @pytest.mark.asyncio
    async def test_stale_version(self, db, mover, project, sprint_abc):
        sprint, items = sprint_abc
        with pytest.raises(StaleItemError) as exc_info:
            await mover.move_item(items["A"].id, "TODO", 3, expected_version=7)
        assert exc_info.value.details == {"expected_version": 7, "current_version": 1}
        assert await _column(db, project.id, sprint.id) == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_matching_version_succeeds(self, mover, sprint_abc):
        _, items = sprint_abc
        moved = await mover.move_item(items["A"].id, "DONE", expected_version=1)
        assert moved.version == 2

    @pytest.mark.asyncio
    async def test_backlog_status_inside_sprint(self, mover, sprint_abc):
        _, items = sprint_abc
        with pytest.raises(ValidationError):
            await mover.move_item(items["A"].id, "BACKLOG")

    @pytest.mark.asyncio
    async def test_board_status_without_sprint(self, mover, make_item):
        item = await make_item()
        with pytest.raises(ValidationError):
            await mover.move_item(item.id, "IN_PROGRESS")

    @pytest.mark.asyncio
    async def test_out_of_completed_sprint(self, db, mover, make_sprint, make_item):
        sprint = await make_sprint(activate=True)
        item = await make_item(sprint_id=sprint.id)
        await mover.move_item(item.id, "DONE")
        await SprintService(db).complete(sprint.id)
        with pytest.raises(ConflictError):
            await mover.move_item(item.id, "TODO")

    @pytest.mark.asyncio
    async def test_into_completed_sprint(self, db, mover, make_sprint, make_item):
        sprint = await make_sprint(activate=True)
        await SprintService(db).complete(sprint.id)
        item = await make_item()
        with pytest.raises(ConflictError):
            await mover.move_item(item.id, "TODO", to_sprint_id=sprint.id)

    @pytest.mark.asyncio
    async def test_into_sprint_of_other_project(self, db, mover, users, make_sprint, make_item):
        other = await ProjectService(db).create_project("Side project", owner_id=users["po"].id)
        foreign = await make_sprint(project_id=other.id)
        item = await make_item()
        with pytest.raises(SprintNotFoundError):
            await mover.move_item(item.id, "TODO", to_sprint_id=foreign.id)


# ---------------------------------------------------------------------------
# reorder_backlog
# ---------------------------------------------------------------------------
class TestReorderBacklog:
    @pytest_asyncio.fixture
    async def backlog(self, make_item):
        return [await make_item(f"Backlog story {name}") for name in "ABCD"]

    @pytest.mark.asyncio
    async def test_rewrites_positions(self, db, mover, project, backlog):
        a, b, c, d = backlog
        ordered = await mover.reorder_backlog(project.id, [d.id, b.id, a.id, c.id])

        assert [item.position for item in ordered] == [1, 2, 3, 4]
        assert await _column(db, project.id, None, ItemStatus.BACKLOG.value) == ["D", "B", "A", "C"]

    @pytest.mark.asyncio
    async def test_active_filters_rejected(self, db, mover, project, backlog):
        ids = [item.id for item in reversed(backlog)]
        with pytest.raises(ValidationError, match="filters"):
            await mover.reorder_backlog(project.id, ids, filters=BacklogFilters(priority="HIGH"))
        assert await _column(db, project.id, None, ItemStatus.BACKLOG.value) == ["A", "B", "C", "D"]

    @pytest.mark.asyncio
    async def test_empty_filters_are_fine(self, mover, project, backlog):
        ids = [item.id for item in reversed(backlog)]
        ordered = await mover.reorder_backlog(project.id, ids, filters=BacklogFilters())
        assert [item.id for item in ordered] == ids

    @pytest.mark.asyncio
    async def test_duplicates_rejected(self, mover, project, backlog):
        a, b, c, d = backlog
        with pytest.raises(ValidationError, match="Duplicate"):
            await mover.reorder_backlog(project.id, [a.id, a.id, b.id, c.id, d.id])

    @pytest.mark.asyncio
    async def test_id_set_must_match(self, mover, project, backlog):
        a, b, c, d = backlog
        with pytest.raises(ValidationError) as exc_info:
            await mover.reorder_backlog(project.id, [a.id, b.id, c.id, 999])
        assert exc_info.value.details == {"missing_ids": [d.id], "unknown_ids": [999]}

    @pytest.mark.asyncio
    async def test_sprint_column(self, db, mover, project, sprint_abc):
        sprint, items = sprint_abc
        await mover.reorder_backlog(
            project.id,
            [items["B"].id, items["C"].id, items["A"].id],
            sprint_id=sprint.id,
            status=ItemStatus.TODO.value
        )
        assert await _column(db, project.id, sprint.id) == ["B", "C", "A"]
