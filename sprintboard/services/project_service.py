from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ProjectNotFoundError,
    ServiceError,
)
from ..models.user import Project, ProjectMembership, ProjectRole, User
from ..utils.logging import get_logger

logger = get_logger(__name__)


class ProjectService:
    """Projects, their members and the role checks the routers rely on"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_project(
        self,
        name: str,
        owner_id: int,
        description: Optional[str] = None
    ) -> Project:
        """Create a project; the creator becomes its Product Owner"""

        try:
            project = Project(name=name, description=description, owner_id=owner_id)
            self.db.add(project)
            await self.db.flush()

            self.db.add(ProjectMembership(
                project_id=project.id,
                user_id=owner_id,
                role=ProjectRole.PRODUCT_OWNER.value
            ))
            await self.db.commit()

            logger.info(f"Created project {project.id} owned by user {owner_id}")
            return project

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to create project: {str(e)}")
            raise

    async def get_project(self, project_id: int) -> Project:
        stmt = select(Project).where(Project.id == project_id, Project.is_active == True)
        result = await self.db.execute(stmt)
        project = result.scalar_one_or_none()

        if project is None:
            raise ProjectNotFoundError(project_id)

        return project

    async def list_user_projects(self, user_id: int) -> List[Project]:
        stmt = (
            select(Project)
            .join(ProjectMembership, ProjectMembership.project_id == Project.id)
            .where(ProjectMembership.user_id == user_id, Project.is_active == True)
            .order_by(Project.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def add_member(
        self,
        project_id: int,
        user_id: int,
        role: ProjectRole = ProjectRole.DEVELOPER
    ) -> ProjectMembership:
        """Add an existing user to a project"""

        await self.get_project(project_id)

        user = await self.db.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError(f"User {user_id} not found")

        if await self.get_membership(project_id, user_id) is not None:
            raise ConflictError(f"User {user_id} is already a member of project {project_id}")

        try:
            membership = ProjectMembership(project_id=project_id, user_id=user_id, role=role.value)
            self.db.add(membership)
            await self.db.commit()

            logger.info(f"Added user {user_id} to project {project_id} as {role.value}")
            return membership

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to add member: {str(e)}")
            if isinstance(e, ServiceError):
                raise
            raise ServiceError(f"Adding member failed: {str(e)}")

    async def list_members(self, project_id: int) -> List[ProjectMembership]:
        stmt = (
            select(ProjectMembership)
            .where(ProjectMembership.project_id == project_id)
            .order_by(ProjectMembership.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_membership(self, project_id: int, user_id: int) -> Optional[ProjectMembership]:
        stmt = select(ProjectMembership).where(
            ProjectMembership.project_id == project_id,
            ProjectMembership.user_id == user_id
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def require_member(
        self,
        project_id: int,
        user_id: int,
        roles: Optional[Iterable[ProjectRole]] = None
    ) -> ProjectMembership:
        """Return the caller's membership or raise ForbiddenError.

        When `roles` is given the membership role must be one of them.
        """

        membership = await self.get_membership(project_id, user_id)
        if membership is None:
            raise ForbiddenError("Not a member of this project")

        if roles is not None:
            allowed = {role.value for role in roles}
            if membership.role not in allowed:
                names = " or ".join(sorted(r.replace("_", " ").title() for r in allowed))
                raise ForbiddenError(f"{names} privileges required")

        return membership
