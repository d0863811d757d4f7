#!/usr/bin/env python3
"""
Seed Data Script for SprintBoard

Creates realistic data for development:
- 5 Users (Product Owner, Scrum Master, 3 Developers)
- 1 Project with memberships
- 1 completed sprint, 1 active sprint
- ~15 Backlog Items spread over the backlog and the active board

Usage:
    python scripts/seed_data.py              # Add seed data
    python scripts/seed_data.py --clear      # Clear all data first
"""
import asyncio
import sys
import os
from datetime import date, timedelta
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sprintboard.core.auth import create_access_token
from sprintboard.database import async_session, create_tables
from sprintboard.models import (
    AcceptanceCriterion,
    BacklogItem,
    ItemAttachment,
    ItemComment,
    ItemHistory,
    KanbanColumn,
    Project,
    ProjectMembership,
    ProjectRole,
    Sprint,
    User,
)
from sprintboard.services.backlog_service import BacklogService
from sprintboard.services.move_service import MoveService
from sprintboard.services.project_service import ProjectService
from sprintboard.services.sprint_service import SprintService


# ==================== DATA DEFINITIONS ====================

USERS_DATA = [
    {"email": "carol.po@company.com", "full_name": "Carol Williams", "role": ProjectRole.PRODUCT_OWNER},
    {"email": "alice.sm@company.com", "full_name": "Alice Johnson", "role": ProjectRole.SCRUM_MASTER},
    {"email": "emma.dev@company.com", "full_name": "Emma Rodriguez", "role": ProjectRole.DEVELOPER},
    {"email": "frank.dev@company.com", "full_name": "Frank Smith", "role": ProjectRole.DEVELOPER},
    {"email": "grace.dev@company.com", "full_name": "Grace Lee", "role": ProjectRole.DEVELOPER},
]

# (title, type, priority, story_points, tags, board status or None for the product backlog)
BACKLOG_ITEMS = [
    ("User Authentication System", "USER_STORY", "HIGH", 8, ["auth"], "DONE"),
    ("Dashboard Analytics View", "USER_STORY", "HIGH", 5, ["frontend"], "DONE"),
    ("Payment Gateway Integration", "USER_STORY", "CRITICAL", 8, ["payments"], "IN_PROGRESS"),
    ("Email Notification System", "TECHNICAL_TASK", "MEDIUM", 5, ["backend"], "IN_PROGRESS"),
    ("Password Reset Flow", "USER_STORY", "HIGH", 3, ["auth"], "TODO"),
    ("Fix session timeout on Safari", "BUG", "HIGH", 2, ["auth", "frontend"], "TODO"),
    ("Full-text product search", "USER_STORY", "MEDIUM", 5, ["search"], None),
    ("API Rate Limiting per user", "TECHNICAL_TASK", "HIGH", 3, ["backend"], None),
    ("User Profile Page with avatar", "USER_STORY", "MEDIUM", 5, ["frontend"], None),
    ("Pagination for all list views", "TECHNICAL_TASK", "MEDIUM", 2, ["frontend"], None),
    ("Centralized error logging", "TECHNICAL_TASK", "HIGH", 3, ["ops"], None),
    ("Dark mode theme toggle", "USER_STORY", "LOW", 5, ["frontend"], None),
    ("CSV import of products", "USER_STORY", "MEDIUM", 5, ["backend"], None),
    ("Two-Factor Authentication", "IMPROVEMENT", "MEDIUM", 13, ["auth"], None),
    ("Webhook subscriptions for events", "USER_STORY", "LOW", 8, ["backend"], None),
]


# ==================== SEED FUNCTIONS ====================

async def clear_all_data(session: AsyncSession):
    """Clear all data from the database"""
    print("🗑️  Clearing existing data...")

    # Delete in correct order (respecting foreign keys)
    for model in (
        ItemHistory,
        ItemAttachment,
        ItemComment,
        AcceptanceCriterion,
        BacklogItem,
        Sprint,
        KanbanColumn,
        ProjectMembership,
        Project,
        User,
    ):
        await session.execute(delete(model))

    await session.commit()
    print("✅ All data cleared")


async def create_users(session: AsyncSession):
    """Create users"""
    print("\n👥 Creating users...")

    users_map = {}
    for user_data in USERS_DATA:
        user = User(email=user_data["email"], full_name=user_data["full_name"], is_active=True)
        session.add(user)
        users_map[user_data["email"]] = user
        print(f"  ✓ Created: {user.full_name} ({user.email}) - Role: {user_data['role'].value}")

    await session.commit()
    return users_map


async def create_project(session: AsyncSession, users_map):
    """Create the project and its memberships"""
    print("\n🏢 Creating project...")

    project_service = ProjectService(session)
    owner = users_map[USERS_DATA[0]["email"]]
    project = await project_service.create_project(
        name="Web Shop",
        owner_id=owner.id,
        description="Customer-facing shop and its backend"
    )
    print(f"  ✓ Created project: {project.name}")

    for user_data in USERS_DATA[1:]:
        user = users_map[user_data["email"]]
        await project_service.add_member(project.id, user.id, user_data["role"])
        print(f"    - Added {user.full_name} as {user_data['role'].value}")

    return project


async def create_sprints(session: AsyncSession, project):
    """Create a completed sprint (for velocity history) and an active one"""
    print(f"\n🏃 Creating sprints for {project.name}...")

    sprint_service = SprintService(session)
    today = date.today()

    previous = await sprint_service.create_sprint(
        project_id=project.id,
        name="Sprint 23",
        start_date=today - timedelta(days=17),
        end_date=today - timedelta(days=3),
        planned_velocity=30,
        objective="Checkout groundwork"
    )
    await sprint_service.activate(previous.id)
    await sprint_service.complete(previous.id)

    sprint = await sprint_service.create_sprint(
        project_id=project.id,
        name="Sprint 24",
        start_date=today - timedelta(days=3),
        end_date=today + timedelta(days=11),
        planned_velocity=40,
        objective="Implement core authentication features and payments"
    )
    await sprint_service.activate(sprint.id)

    print(f"  ✓ Created: {sprint.name}")
    print(f"    Start: {sprint.start_date}, End: {sprint.end_date}")
    print(f"    Objective: {sprint.objective}")

    return sprint


async def create_backlog_items(session: AsyncSession, project, sprint, users_map):
    """Create backlog items and lay out the active board"""
    print(f"\n📋 Creating backlog items for {project.name}...")

    backlog_service = BacklogService(session)
    move_service = MoveService(session)
    owner = users_map[USERS_DATA[0]["email"]]
    developers = [users_map[u["email"]] for u in USERS_DATA if u["role"] == ProjectRole.DEVELOPER]

    items_count = {"BACKLOG": 0, "TODO": 0, "IN_PROGRESS": 0, "DONE": 0}

    for idx, (title, item_type, priority, points, tags, status) in enumerate(BACKLOG_ITEMS):
        assignee = developers[idx % len(developers)] if status else None
        item = await backlog_service.create_item(
            project_id=project.id,
            title=title,
            creator_id=owner.id,
            type=item_type,
            priority=priority,
            story_points=points,
            tags=tags,
            assigned_to_id=assignee.id if assignee else None,
            sprint_id=sprint.id if status else None
        )

        if status and status != "TODO":
            await move_service.move_item(item.id, status, user_id=assignee.id)

        items_count[status or "BACKLOG"] += 1

    print(f"  ✓ Created {len(BACKLOG_ITEMS)} items")
    for status, count in items_count.items():
        print(f"    - {status}: {count}")


async def seed_database(clear_first: bool = False):
    """Main seeding function"""
    print("=" * 60)
    print("🌱 SprintBoard - Database Seeding")
    print("=" * 60)

    await create_tables()

    async with async_session() as session:
        if clear_first:
            await clear_all_data(session)

        users_map = await create_users(session)
        project = await create_project(session, users_map)
        sprint = await create_sprints(session, project)
        await create_backlog_items(session, project, sprint, users_map)

    print("\n" + "=" * 60)
    print("✅ Database seeding complete!")
    print("=" * 60)
    print("\n📊 Summary:")
    print(f"  Users: {len(USERS_DATA)}")
    print("  Projects: 1")
    print("  Sprints: 2 (1 completed, 1 active)")
    print(f"  Backlog Items: {len(BACKLOG_ITEMS)}")
    print("\n🔑 Development tokens:")
    for user_data in USERS_DATA[:3]:
        user = users_map[user_data["email"]]
        print(f"  {user_data['role'].value}: {create_access_token({'sub': user.id})}")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Seed SprintBoard database")
    parser.add_argument("--clear", action="store_true", help="Clear all data before seeding")
    args = parser.parse_args()

    asyncio.run(seed_database(clear_first=args.clear))
