from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from ..config import settings
from ..database import get_db
from ..models.backlog import BacklogItem
from ..models.user import ProjectMembership, ProjectRole, User
from ..services.project_service import ProjectService
from .exceptions import ForbiddenError

security = HTTPBearer()

SPRINT_MANAGERS = (ProjectRole.SCRUM_MASTER, ProjectRole.PRODUCT_OWNER)
PRODUCT_OWNERS = (ProjectRole.PRODUCT_OWNER,)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Create JWT access token"""
    to_encode = data.copy()
    if "sub" in to_encode:
        to_encode["sub"] = str(to_encode["sub"])

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)

    return encoded_jwt


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Get current authenticated user from JWT token"""

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.algorithm]
        )
        subject = payload.get("sub")
        if subject is None:
            raise credentials_exception
        user_id = int(subject)

    except (JWTError, ValueError):
        raise credentials_exception

    # Get user from database
    stmt = select(User).where(User.id == user_id, User.is_active == True)
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()

    if user is None:
        raise credentials_exception

    return user


async def require_project_role(
    db: AsyncSession,
    project_id: int,
    user: User,
    roles: Optional[Iterable[ProjectRole]] = None
) -> ProjectMembership:
    """Membership of `user` in the project, optionally limited to `roles`"""
    return await ProjectService(db).require_member(project_id, user.id, roles)


async def require_item_editor(db: AsyncSession, item: BacklogItem, user: User) -> ProjectMembership:
    """Product Owner, the item's creator or its assignee may edit an item"""

    membership = await require_project_role(db, item.project_id, user)
    if membership.role == ProjectRole.PRODUCT_OWNER.value:
        return membership
    if user.id in (item.created_by_id, item.assigned_to_id):
        return membership

    raise ForbiddenError("Only the Product Owner, the creator or the assignee can edit this item")
