from fastapi import APIRouter
from .backlog import router as backlog_router
from .kanban import router as kanban_router
from .projects import router as projects_router
from .sprints import router as sprints_router

api_router = APIRouter()

# Include all sub-routers
api_router.include_router(projects_router, prefix="/projects", tags=["projects"])
api_router.include_router(backlog_router, prefix="/backlog", tags=["backlog"])
api_router.include_router(sprints_router, prefix="/sprints", tags=["sprints"])
api_router.include_router(kanban_router, prefix="/kanban", tags=["kanban"])
