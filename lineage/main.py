import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lineage.config import settings
from lineage.database import Base, engine
from lineage.errors import (
    ConcurrencyError,
    IntegrityError,
    NotFoundError,
    PermissionDenied,
    TreeError,
    ValidationError,
)
from lineage.logging_config import bind_context, clear_context, configure_logging

# Import models so SQLAlchemy registers tables
from lineage.models import (
    node,
    union,
    block,
    branch_moderator,
    actor_role,
    audit_entry,
    operation_group,
)

# Routers
from lineage.routers import (
    tree_router,
    search_router,
    audit_router,
    admin_router,
)

configure_logging()
logger = structlog.get_logger()

# -----------------------
# CREATE APP
# -----------------------
app = FastAPI(
    title="Lineage Tree API",
    description="Hierarchical family tree engine: branches, ancestry search, audited edits and undo.",
    version="1.0.0",
)
logger.info("app_starting", env=settings.ENV, single_root=settings.SINGLE_ROOT)

# -----------------------
# CORS (ONLY ONCE)
# -----------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------
# REQUEST LOG CONTEXT
# -----------------------
@app.middleware("http")
async def request_context(request: Request, call_next):
    clear_context()
    bind_context(
        request_id=request.headers.get("x-request-id") or str(uuid.uuid4()),
        method=request.method,
        path=request.url.path,
    )
    try:
        return await call_next(request)
    finally:
        clear_context()


# -----------------------
# ENGINE ERRORS -> HTTP
# -----------------------
def status_for(exc: TreeError) -> int:
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConcurrencyError):
        return 423
    if isinstance(exc, PermissionDenied):
        return 403
    if isinstance(exc, IntegrityError):
        return 409
    return 400


@app.exception_handler(TreeError)
async def tree_error_handler(request: Request, exc: TreeError):
    status = status_for(exc)
    logger.info("request_rejected", code=exc.code, status=status)

    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)


# -----------------------
# DATABASE TABLES
# -----------------------
Base.metadata.create_all(bind=engine)

# -----------------------
# ROUTES
# -----------------------
app.include_router(tree_router.router)
app.include_router(search_router.router)
app.include_router(audit_router.router)
app.include_router(admin_router.router)


# -----------------------
# HEALTH CHECK
# -----------------------
@app.get("/")
def root():
    return {"message": "Lineage API is running!"}
