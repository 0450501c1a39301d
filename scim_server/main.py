"""
SCIM Server - Main FastAPI Application

This FastAPI application provides SCIM 2.0 endpoints through which an
identity provider provisions Users and Groups, and manages group
membership, against a pluggable storage backend (memory, JSON file or SQL).

Endpoints:
- GET /health - Health check
- GET /scim/v2 - SCIM marker
- GET /scim/v2/Users - List/filter users
- GET /scim/v2/Users/{user_id} - Get user
- POST /scim/v2/Users - Create user
- PUT /scim/v2/Users/{user_id} - Replace user
- PATCH /scim/v2/Users/{user_id} - Update user attributes or groups
- DELETE /scim/v2/Users/{user_id} - Delete user and its memberships
- The same six operations on /scim/v2/Groups
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import SCIMServerSettings, get_settings
from .errors import BadRequest, InternalError, SCIMException
from .handlers import observe_bearer_token
from .models import parse_group, parse_user
from .services import GROUP_SCHEMA, USER_SCHEMA, ResourceRepository, build_repository, interpret
from .services.envelope import (
    error_response,
    exception_response,
    list_response,
    no_content_response,
    resource_response,
)
from .services.filters import parse_filter
from .services.seed import seed_from_file

logger = logging.getLogger(__name__)

VERSION = __version__


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def get_repository(request: Request) -> ResourceRepository:
    """FastAPI dependency returning the repository owned by the application."""
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        raise InternalError("Repository not initialized")
    return repository


def get_base_path(request: Request) -> str:
    return request.app.state.settings.base_path


async def read_json(request: Request) -> Any:
    """
    Decode the request body; a dependency of the write routes.

    Raises:
        BadRequest: If the body is empty or not valid JSON
    """
    body = await request.body()
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Failed to parse request JSON: {e}")
        raise BadRequest("Invalid JSON format")


router = APIRouter(dependencies=[Depends(observe_bearer_token)])


@router.get("", response_class=PlainTextResponse)
def scim_root():
    """Default SCIM endpoint."""
    return "SCIM"


# Users


@router.get("/Users")
def list_users(
    startIndex: Optional[int] = Query(None),
    count: Optional[int] = Query(None),
    filter: Optional[str] = Query(None),
    repository: ResourceRepository = Depends(get_repository),
    base_path: str = Depends(get_base_path),
):
    """
    List users, optionally filtered by ``attribute eq value``.

    Args:
        startIndex: 1-based starting index for pagination
        count: Number of users to return (default: all remaining)
        filter: SCIM filter expression

    Returns:
        SCIM ListResponse; 404 when nothing matches
    """
    logger.info(f"Listing users: startIndex={startIndex}, count={count}, filter={filter}")
    expression = parse_filter(filter)
    if expression:
        users, total = repository.filter_users(expression.attribute, expression.value, startIndex, count)
    else:
        users, total = repository.list_users(startIndex, count)
    logger.info(f"Returned {len(users)} users (total: {total})")
    return list_response(users, total, startIndex, base_path)


@router.get("/Users/{user_id}")
def get_user(
    user_id: str,
    repository: ResourceRepository = Depends(get_repository),
    base_path: str = Depends(get_base_path),
):
    user = repository.get_user(user_id)
    return resource_response(user, base_path)


@router.post("/Users")
def create_user(
    payload: Any = Depends(read_json),
    repository: ResourceRepository = Depends(get_repository),
    base_path: str = Depends(get_base_path),
):
    """
    Create a new user.

    Group references in ``groups`` are materialized as memberships in the
    same transaction; an unknown group fails the whole create with 400.
    """
    draft = parse_user(payload)
    logger.info(f"Creating user: {draft.userName}")
    user = repository.create_user(draft)
    return resource_response(user, base_path, status.HTTP_201_CREATED)


@router.put("/Users/{user_id}")
def replace_user(
    user_id: str,
    payload: Any = Depends(read_json),
    repository: ResourceRepository = Depends(get_repository),
    base_path: str = Depends(get_base_path),
):
    """Replace a user's attributes, and its groups when the body carries them."""
    draft = parse_user(payload)
    logger.info(f"Replacing user: {user_id}")
    user = repository.update_user(user_id, draft)
    return resource_response(user, base_path)


@router.patch("/Users/{user_id}")
def patch_user(
    user_id: str,
    payload: Any = Depends(read_json),
    repository: ResourceRepository = Depends(get_repository),
    base_path: str = Depends(get_base_path),
):
    """Apply SCIM PATCH operations to a user."""
    plan = interpret(payload, USER_SCHEMA)
    logger.info(f"Updating user: {user_id}")
    user = repository.patch_user(user_id, plan)
    return resource_response(user, base_path)


@router.delete("/Users/{user_id}")
def delete_user(user_id: str, repository: ResourceRepository = Depends(get_repository)):
    """Delete a user and all of its group memberships."""
    logger.info(f"Deleting user: {user_id}")
    repository.delete_user(user_id)
    return no_content_response()


# Groups


@router.get("/Groups")
def list_groups(
    startIndex: Optional[int] = Query(None),
    count: Optional[int] = Query(None),
    filter: Optional[str] = Query(None),
    repository: ResourceRepository = Depends(get_repository),
    base_path: str = Depends(get_base_path),
):
    logger.info(f"Listing groups: startIndex={startIndex}, count={count}, filter={filter}")
    expression = parse_filter(filter)
    if expression:
        groups, total = repository.filter_groups(expression.attribute, expression.value, startIndex, count)
    else:
        groups, total = repository.list_groups(startIndex, count)
    return list_response(groups, total, startIndex, base_path)


@router.get("/Groups/{group_id}")
def get_group(
    group_id: str,
    repository: ResourceRepository = Depends(get_repository),
    base_path: str = Depends(get_base_path),
):
    group = repository.get_group(group_id)
    return resource_response(group, base_path)


@router.post("/Groups")
def create_group(
    payload: Any = Depends(read_json),
    repository: ResourceRepository = Depends(get_repository),
    base_path: str = Depends(get_base_path),
):
    draft = parse_group(payload)
    logger.info(f"Creating group: {draft.displayName}")
    group = repository.create_group(draft)
    return resource_response(group, base_path, status.HTTP_201_CREATED)


@router.put("/Groups/{group_id}")
def replace_group(
    group_id: str,
    payload: Any = Depends(read_json),
    repository: ResourceRepository = Depends(get_repository),
    base_path: str = Depends(get_base_path),
):
    draft = parse_group(payload)
    logger.info(f"Replacing group: {group_id}")
    group = repository.update_group(group_id, draft)
    return resource_response(group, base_path)


@router.patch("/Groups/{group_id}")
def patch_group(
    group_id: str,
    payload: Any = Depends(read_json),
    repository: ResourceRepository = Depends(get_repository),
    base_path: str = Depends(get_base_path),
):
    """Apply SCIM PATCH operations (displayName, member add/remove) to a group."""
    plan = interpret(payload, GROUP_SCHEMA)
    logger.info(f"Updating group: {group_id}")
    group = repository.patch_group(group_id, plan)
    return resource_response(group, base_path)


@router.delete("/Groups/{group_id}")
def delete_group(group_id: str, repository: ResourceRepository = Depends(get_repository)):
    logger.info(f"Deleting group: {group_id}")
    repository.delete_group(group_id)
    return no_content_response()


def create_app(
    settings: Optional[SCIMServerSettings] = None,
    repository: Optional[ResourceRepository] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    The repository is created at startup from ``settings`` unless one is
    passed in, seeded from ``settings.seed_file`` when the store is empty,
    and closed at shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting SCIM server...")
        if getattr(app.state, "repository", None) is None:
            app.state.repository = build_repository(settings)
        if settings.seed_file:
            seed_from_file(app.state.repository, str(settings.seed_file))
        logger.info(f"SCIM server ready with {app.state.repository.backend_name} backend")
        yield
        app.state.repository.close()
        app.state.repository = None
        logger.info("SCIM server stopped")

    app = FastAPI(
        title="SCIM Server",
        description="SCIM 2.0 provisioning endpoint for Users, Groups and group memberships",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.repository = repository

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        if request.url.path.startswith(settings.base_path):
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                f"{request.method} {request.url.path} completed in {elapsed_ms:.0f}ms "
                f"with status {response.status_code}"
            )
        return response

    @app.get("/health")
    def health_check(request: Request):
        """
        Health check endpoint.

        Returns:
            dict: Health status, backend name and resource counts
        """
        repo = getattr(request.app.state, "repository", None)
        health_response = {
            "status": "healthy" if repo is not None else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "backend": repo.backend_name if repo is not None else None,
            "version": VERSION,
        }
        status_code = status.HTTP_200_OK
        if repo is None:
            status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        else:
            try:
                health_response["users"] = repo.count_users()
                health_response["groups"] = repo.count_groups()
            except SCIMException as e:
                logger.warning(f"Health check failed - storage error: {e.detail}")
                health_response["status"] = "degraded"
                status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(content=health_response, status_code=status_code)

    @app.exception_handler(SCIMException)
    async def scim_exception_handler(request: Request, exc: SCIMException):
        """Render typed SCIM errors with their mapped HTTP status."""
        log = logger.error if exc.status >= 500 else logger.warning
        log(f"{request.method} {request.url.path} failed with {exc.status}: {exc.detail}")
        return exception_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Convert routing and HTTP errors (404, 405, ...) to SCIM error format."""
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert query/path validation failures to SCIM 400 errors."""
        return error_response(status.HTTP_400_BAD_REQUEST, f"Invalid request: {exc.errors()}")

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Convert unhandled exceptions to SCIM error format."""
        logger.error(f"Unhandled exception: {exc}")
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    app.include_router(router, prefix=settings.base_path)
    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
