"""Tests for BacklogService: item store, listing and sub-resources."""

from __future__ import annotations

import pytest
import pytest_asyncio

from sprintboard.core.exceptions import (
    BacklogItemNotFoundError,
    ConflictError,
    NotFoundError,
    SprintNotFoundError,
    ValidationError,
)
from sprintboard.models import HistoryAction, ItemPriority, ItemStatus, ItemType
from sprintboard.services.backlog_service import (
    BacklogFilters,
    BacklogService,
    BacklogSort,
    SortField,
    SortOrder,
)
from sprintboard.services.sprint_service import SprintService


@pytest.fixture
def service(db):
    return BacklogService(db)


async def _positions(service, project_id, sprint_id=None, status=ItemStatus.BACKLOG.value):
    items = await service.partition_items(project_id, sprint_id, status)
    return [(item.title, item.position) for item in items]


# ---------------------------------------------------------------------------
# create_item
# ---------------------------------------------------------------------------
class TestCreateItem:
    @pytest.mark.asyncio
    async def test_appends_to_product_backlog(self, service, project, make_item):
        first = await make_item("First backlog story")
        second = await make_item("Second backlog story")

        assert first.status == ItemStatus.BACKLOG.value
        assert first.sprint_id is None
        assert (first.position, second.position) == (1, 2)
        assert first.type == ItemType.USER_STORY.value
        assert first.priority == ItemPriority.MEDIUM.value
        assert first.version == 1

    @pytest.mark.asyncio
    async def test_into_sprint_lands_in_todo(self, project, make_item, make_sprint):
        sprint = await make_sprint()
        item = await make_item("Sprint scoped story", sprint_id=sprint.id)
        assert item.status == ItemStatus.TODO.value
        assert item.sprint_id == sprint.id
        assert item.position == 1

    @pytest.mark.asyncio
    async def test_records_create_history(self, service, make_item, users):
        item = await make_item()
        history = await service.get_history(item.id)
        assert [h.action for h in history] == [HistoryAction.CREATE.value]
        assert history[0].user_id == users["po"].id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("title", ["short", "x" * 201, "   "])
    async def test_rejects_bad_titles(self, make_item, title):
        with pytest.raises(ValidationError):
            await make_item(title)

    @pytest.mark.asyncio
    async def test_rejects_long_description(self, make_item):
        with pytest.raises(ValidationError, match="Description"):
            await make_item(description="d" * 1001)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("points", [0, 4, 6, 34, -1, True])
    async def test_story_points_must_be_fibonacci(self, make_item, points):
        with pytest.raises(ValidationError, match="Fibonacci"):
            await make_item(story_points=points)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("points", [1, 2, 3, 5, 8, 13, 21, None])
    async def test_accepts_fibonacci_points(self, make_item, points):
        item = await make_item(story_points=points)
        assert item.story_points == points

    @pytest.mark.asyncio
    async def test_rejects_unknown_type_and_priority(self, make_item):
        with pytest.raises(ValidationError):
            await make_item(type="EPIC")
        with pytest.raises(ValidationError):
            await make_item(priority="URGENT")

    @pytest.mark.asyncio
    async def test_stores_trimmed_title(self, make_item):
        item = await make_item("   Padded checkout story  ")
        assert item.title == "Padded checkout story"

    @pytest.mark.asyncio
    async def test_unknown_sprint(self, make_item):
        with pytest.raises(SprintNotFoundError):
            await make_item(sprint_id=999)

    @pytest.mark.asyncio
    async def test_completed_sprint_is_a_conflict(self, db, make_item, make_sprint):
        sprint = await make_sprint(activate=True)
        await SprintService(db).complete(sprint.id)
        with pytest.raises(ConflictError):
            await make_item(sprint_id=sprint.id)

    @pytest.mark.asyncio
    async def test_assignee_must_be_member(self, make_item, users):
        with pytest.raises(ValidationError, match="member"):
            await make_item(assigned_to_id=users["outsider"].id)


# ---------------------------------------------------------------------------
# update_fields / delete_item / assign_member
# ---------------------------------------------------------------------------
class TestUpdateFields:
    @pytest.mark.asyncio
    async def test_updates_and_bumps_version(self, service, make_item, users):
        item = await make_item()
        updated = await service.update_fields(
            item.id, {"title": "A much better title", "story_points": 5}, users["dev"].id
        )
        assert updated.title == "A much better title"
        assert updated.story_points == 5
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_one_history_entry_per_changed_field(self, service, make_item, users):
        item = await make_item(priority="LOW")
        await service.update_fields(
            item.id, {"priority": "HIGH", "tags": ["api"], "description": None}, users["po"].id
        )
        history = await service.get_history(item.id)
        updates = sorted(h.field_changed for h in history if h.action == HistoryAction.UPDATE.value)
        assert updates == ["priority", "tags"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["status", "position", "sprint_id"])
    async def test_rejects_board_fields(self, service, make_item, field):
        item = await make_item()
        with pytest.raises(ValidationError):
            await service.update_fields(item.id, {field: 1})

    @pytest.mark.asyncio
    async def test_rejects_invalid_points(self, service, make_item):
        item = await make_item()
        with pytest.raises(ValidationError):
            await service.update_fields(item.id, {"story_points": 7})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["type", "priority"])
    async def test_rejects_null_for_required_fields(self, service, make_item, field):
        item = await make_item(type="BUG", priority="HIGH")
        with pytest.raises(ValidationError, match=f"Invalid {field}"):
            await service.update_fields(item.id, {field: None})

        reloaded = await service.get_backlog_item(item.id)
        assert (reloaded.type, reloaded.priority, reloaded.version) == ("BUG", "HIGH", 1)

    @pytest.mark.asyncio
    async def test_trims_title(self, service, make_item):
        item = await make_item("Backlog item title")
        unchanged = await service.update_fields(item.id, {"title": "  Backlog item title "})
        assert (unchanged.title, unchanged.version) == ("Backlog item title", 1)

        renamed = await service.update_fields(item.id, {"title": " Renamed backlog item "})
        assert renamed.title == "Renamed backlog item"

    @pytest.mark.asyncio
    async def test_unknown_item(self, service, project):
        with pytest.raises(BacklogItemNotFoundError):
            await service.update_fields(404, {"title": "Whatever title"})


class TestDeleteItem:
    @pytest.mark.asyncio
    async def test_soft_delete_compacts_partition(self, service, project, make_item):
        await make_item("Item number one")
        middle = await make_item("Item number two")
        await make_item("Item number three")

        await service.delete_item(middle.id)

        assert await _positions(service, project.id) == [
            ("Item number one", 1),
            ("Item number three", 2),
        ]
        with pytest.raises(BacklogItemNotFoundError):
            await service.get_backlog_item(middle.id)

    @pytest.mark.asyncio
    async def test_history_survives_deletion(self, service, make_item):
        item = await make_item()
        await service.delete_item(item.id)
        history = await service.get_history(item.id)
        assert history[0].action == HistoryAction.DELETE.value

    @pytest.mark.asyncio
    async def test_deleting_twice_is_not_found(self, service, make_item):
        item = await make_item()
        await service.delete_item(item.id)
        with pytest.raises(BacklogItemNotFoundError):
            await service.delete_item(item.id)


class TestAssignMember:
    @pytest.mark.asyncio
    async def test_assign_and_unassign(self, service, make_item, users):
        item = await make_item()
        item = await service.assign_member(item.id, users["dev"].id, users["po"].id)
        assert item.assigned_to_id == users["dev"].id

        item = await service.assign_member(item.id, None, users["po"].id)
        assert item.assigned_to_id is None

        history = await service.get_history(item.id)
        assert [h.action for h in history[:2]] == [HistoryAction.ASSIGN.value] * 2

    @pytest.mark.asyncio
    async def test_non_member_rejected(self, service, make_item, users):
        item = await make_item()
        with pytest.raises(ValidationError):
            await service.assign_member(item.id, users["outsider"].id)


# ---------------------------------------------------------------------------
# list_by_project
# ---------------------------------------------------------------------------
class TestListByProject:
    @pytest_asyncio.fixture
    async def catalog(self, make_item, make_sprint, users):
        sprint = await make_sprint()
        return {
            "login": await make_item(
                "Login with email", type="USER_STORY", priority="HIGH", story_points=5,
                tags=["Auth", "frontend"], assigned_to_id=users["dev"].id
            ),
            "crash": await make_item(
                "Crash on checkout page", type="BUG", priority="CRITICAL", story_points=3,
                tags=["payments"], description="Happens with expired AUTH tokens"
            ),
            "docs": await make_item(
                "Document the public API", type="TECHNICAL_TASK", priority="LOW", story_points=8,
                sprint_id=sprint.id, assigned_to_id=users["dev2"].id
            ),
            "sprint": sprint,
        }

    @pytest.mark.asyncio
    async def test_default_order_is_position_then_id(self, service, project, catalog):
        items = await service.list_by_project(project.id)
        assert [i.title for i in items] == [
            "Login with email",
            "Document the public API",
            "Crash on checkout page",
        ]

    @pytest.mark.asyncio
    async def test_tags_match_any_case_insensitive(self, service, project, catalog):
        items = await service.list_by_project(project.id, BacklogFilters(tags="auth,payments"))
        assert {i.id for i in items} == {catalog["login"].id, catalog["crash"].id}

    @pytest.mark.asyncio
    async def test_search_covers_title_description_and_tags(self, service, project, catalog):
        items = await service.list_by_project(project.id, BacklogFilters(search="AUTH"))
        assert {i.id for i in items} == {catalog["login"].id, catalog["crash"].id}

    @pytest.mark.asyncio
    async def test_unassigned_and_product_backlog(self, service, project, catalog):
        unassigned = await service.list_by_project(project.id, BacklogFilters(assigned_to_id="null"))
        assert [i.id for i in unassigned] == [catalog["crash"].id]

        backlog = await service.list_by_project(project.id, BacklogFilters(sprint_id="backlog"))
        assert {i.id for i in backlog} == {catalog["login"].id, catalog["crash"].id}

        in_sprint = await service.list_by_project(
            project.id, BacklogFilters(sprint_id=catalog["sprint"].id)
        )
        assert [i.id for i in in_sprint] == [catalog["docs"].id]

    @pytest.mark.asyncio
    async def test_type_priority_and_status(self, service, project, catalog):
        bugs = await service.list_by_project(project.id, BacklogFilters(type=ItemType.BUG))
        assert [i.id for i in bugs] == [catalog["crash"].id]

        low = await service.list_by_project(project.id, BacklogFilters(priority="LOW"))
        assert [i.id for i in low] == [catalog["docs"].id]

        todo = await service.list_by_project(project.id, BacklogFilters(status="todo"))
        assert [i.id for i in todo] == [catalog["docs"].id]

    @pytest.mark.asyncio
    async def test_priority_sorts_by_rank(self, service, project, catalog):
        items = await service.list_by_project(
            project.id, sort=BacklogSort(sort_by=SortField.PRIORITY, sort_order=SortOrder.DESC)
        )
        assert [i.priority for i in items] == ["CRITICAL", "HIGH", "LOW"]

    @pytest.mark.asyncio
    async def test_story_points_ascending(self, service, project, catalog):
        items = await service.list_by_project(
            project.id, sort=BacklogSort(sort_by=SortField.STORY_POINTS)
        )
        assert [i.story_points for i in items] == [3, 5, 8]

    @pytest.mark.asyncio
    async def test_deleted_items_are_hidden(self, service, project, catalog):
        await service.delete_item(catalog["crash"].id)
        items = await service.list_by_project(project.id)
        assert catalog["crash"].id not in {i.id for i in items}

    @pytest.mark.asyncio
    async def test_limit_and_offset(self, service, project, catalog):
        items = await service.list_by_project(project.id, limit=1, offset=1)
        assert [i.title for i in items] == ["Document the public API"]

    def test_filters_activity(self):
        assert not BacklogFilters().is_active
        assert not BacklogFilters(search="  ", tags="").is_active
        assert BacklogFilters(assigned_to_id="unassigned").is_active


# ---------------------------------------------------------------------------
# Sub-resources
# ---------------------------------------------------------------------------
class TestSubResources:
    @pytest.mark.asyncio
    async def test_acceptance_criteria_crud(self, service, make_item):
        item = await make_item()
        criterion = await service.add_criterion(item.id, "  Given a user, when... ")
        assert criterion.description == "Given a user, when..."

        updated = await service.update_criterion(item.id, criterion.id, is_completed=True)
        assert updated.is_completed is True

        await service.delete_criterion(item.id, criterion.id)
        assert await service.list_criteria(item.id) == []

    @pytest.mark.asyncio
    async def test_criterion_of_another_item_is_not_found(self, service, make_item):
        first = await make_item("First backlog story")
        second = await make_item("Second backlog story")
        criterion = await service.add_criterion(first.id, "Works offline")
        with pytest.raises(NotFoundError):
            await service.update_criterion(second.id, criterion.id, description="Hijacked")

    @pytest.mark.asyncio
    async def test_comments(self, service, make_item, users):
        item = await make_item()
        await service.add_comment(item.id, users["dev"].id, "Needs a design review")
        comments = await service.list_comments(item.id)
        assert [(c.author_id, c.content) for c in comments] == [(users["dev"].id, "Needs a design review")]

        with pytest.raises(ValidationError):
            await service.add_comment(item.id, users["dev"].id, "   ")

    @pytest.mark.asyncio
    async def test_attachments(self, service, make_item, users):
        item = await make_item()
        attachment = await service.add_attachment(
            item.id, users["dev"].id, "mockup.png", mime_type="image/png", size=2048
        )
        assert [a.filename for a in await service.list_attachments(item.id)] == ["mockup.png"]

        await service.delete_attachment(item.id, attachment.id)
        assert await service.list_attachments(item.id) == []

        with pytest.raises(NotFoundError):
            await service.delete_attachment(item.id, attachment.id)
