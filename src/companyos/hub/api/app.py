"""
CompanyOS Hub - FastAPI Application.

Thin HTTP/WebSocket surface over the core: the lifespan wires the event bus
to the persistence handlers and the real-time bridge, `/ws` hosts dashboard
sockets and the approval routes expose the classifier.
"""

import logging
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from companyos import __version__
from companyos.agents.tasks import AgentTaskService
from companyos.approval.classifier import ApprovalClassifier
from companyos.approval.models import Change
from companyos.core.config import CompanyOSConfig, get_config
from companyos.core.errors import AuthorizationError, TaskStateError
from companyos.core.events import EventBus, get_event_bus
from companyos.handlers import EventRecorder, LoggingEventRecorder, register_handlers
from companyos.hub.auth.jwt import JWTService, Principal, get_current_user
from companyos.hub.bridge import RealtimeBridge
from companyos.hub.channels import ChannelRouter
from companyos.hub.subscriptions.pubsub import SubscriptionService, TopicPubSub
from companyos.hub.websockets.manager import WS_POLICY_VIOLATION, RoomManager

logger = logging.getLogger(__name__)

API_VERSION = "v1"


# =============================================================================
# STANDARDIZED ERROR RESPONSES
# =============================================================================


class ErrorResponse(BaseModel):
    """Error body returned by every failing route."""

    error: str = Field(..., description="Human-readable error message")
    error_code: str = Field(..., description="Machine-readable error code")
    status_code: int = Field(..., description="HTTP status code")
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        description="ISO 8601 timestamp",
    )
    request_id: str | None = Field(None, description="Request correlation ID")
    details: dict | None = Field(None, description="Additional error details")


class ErrorCodes:
    """Error codes for client handling."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


_STATUS_CODES = {
    400: ErrorCodes.BAD_REQUEST,
    401: ErrorCodes.UNAUTHORIZED,
    403: ErrorCodes.FORBIDDEN,
    404: ErrorCodes.NOT_FOUND,
    409: ErrorCodes.CONFLICT,
    503: ErrorCodes.SERVICE_UNAVAILABLE,
}


def create_error_response(
    status_code: int,
    error: str,
    error_code: str | None = None,
    request: Request | None = None,
    details: dict | None = None,
) -> JSONResponse:
    """Build a JSONResponse in the standard error format."""
    response = ErrorResponse(
        error=error,
        error_code=error_code or _STATUS_CODES.get(status_code, ErrorCodes.INTERNAL_ERROR),
        status_code=status_code,
        request_id=request.headers.get("x-request-id") if request else None,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=response.model_dump(exclude_none=True))


# =============================================================================
# REQUEST MODELS
# =============================================================================


class ChangeRequest(BaseModel):
    """A change submitted for classification."""

    model_config = ConfigDict(populate_by_name=True)

    type: str | None = None
    code: str = ""
    file_path: str | None = Field(None, alias="filePath")
    security_issues: list[Any] = Field(default_factory=list, alias="securityIssues")
    test_results: dict[str, Any] = Field(default_factory=dict, alias="testResults")
    description: str = ""

    def to_change(self) -> Change:
        return Change.from_dict(self.model_dump(by_alias=True))


class RejectRequest(BaseModel):
    reason: str = ""


# =============================================================================
# ROUTES
# =============================================================================

router = APIRouter()


def _state(request: Request):
    return request.app.state


@router.post("/approval/classify", tags=["Approval"])
async def classify_change(
    body: ChangeRequest,
    request: Request,
    user: Principal = Depends(get_current_user),
):
    """Classify a change and return the verdict."""
    verdict = _state(request).classifier.classify(body.to_change())
    logger.debug(
        f"Classified change for {user.user_id}: {verdict.risk_level.value} "
        f"(needs approval: {verdict.needs_approval})"
    )
    return verdict.to_dict()


@router.get("/approval/rules", tags=["Approval"])
async def list_rules(request: Request):
    """Configured approval rules in evaluation order."""
    return {"rules": _state(request).classifier.rules_summary()}


@router.get("/agent-tasks/pending", tags=["Agent Tasks"])
async def pending_tasks(request: Request, user: Principal = Depends(get_current_user)):
    """Agent tasks of the caller's organization that wait for approval."""
    tasks = _state(request).agent_tasks.pending_approvals(user.organization_id)
    return {"tasks": [task.to_dict() for task in tasks]}


def _owned_task(request: Request, task_id: str, user: Principal):
    service: AgentTaskService = _state(request).agent_tasks
    try:
        task = service.get(task_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown agent task: {task_id}")
    if task.organization_id != user.organization_id:
        raise AuthorizationError("Task belongs to another organization", status_code=403)
    return service, task


@router.post("/agent-tasks/{task_id}/approve", tags=["Agent Tasks"])
async def approve_task(task_id: str, request: Request, user: Principal = Depends(get_current_user)):
    service, task = _owned_task(request, task_id, user)
    task = await service.approve(task.id, user.user_id)
    return task.to_dict()


@router.post("/agent-tasks/{task_id}/reject", tags=["Agent Tasks"])
async def reject_task(
    task_id: str,
    body: RejectRequest,
    request: Request,
    user: Principal = Depends(get_current_user),
):
    service, task = _owned_task(request, task_id, user)
    task = await service.reject(task.id, user.user_id, body.reason)
    return task.to_dict()


def _bearer_token(authorization: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


async def websocket_endpoint(websocket: WebSocket, token: str | None = None):
    """
    Dashboard socket.

    The token comes from the `token` query parameter or an Authorization
    header. An invalid token closes the socket with 1008 before it joins
    any room.
    """
    state = websocket.app.state
    token = token or _bearer_token(websocket.headers.get("authorization"))

    try:
        principal = state.jwt_service.verify_token(token)
    except AuthorizationError as e:
        logger.warning(f"WebSocket authentication failed: {e}")
        await websocket.close(code=WS_POLICY_VIOLATION, reason=str(e))
        return

    rooms: RoomManager = state.rooms
    connection_id = str(uuid4())
    if not await rooms.connect(websocket, connection_id, principal):
        return

    try:
        while True:
            message = await websocket.receive_text()
            await rooms.handle_client_message(connection_id, message)
    except WebSocketDisconnect as e:
        logger.debug(f"WebSocket {connection_id} closed by client (code {e.code})")
    finally:
        await rooms.disconnect(connection_id)


# =============================================================================
# APPLICATION
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Attach the bus consumers and run the socket heartbeat."""
    state = app.state
    logger.info("Starting CompanyOS hub...")

    if not getattr(state, "handlers_registered", False):
        register_handlers(state.bus, state.recorder)
        state.handlers_registered = True
    state.bridge.attach(state.bus)
    await state.rooms.start_heartbeat()

    yield

    logger.info("Shutting down CompanyOS hub...")
    await state.rooms.stop_heartbeat()
    await state.bus.drain()
    logger.info("CompanyOS hub stopped")


def create_app(
    config: CompanyOSConfig | None = None,
    bus: EventBus | None = None,
    recorder: EventRecorder | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Configuration (defaults to the global config)
        bus: Event bus to consume (defaults to the global bus)
        recorder: Persistence port for the integration handlers and approval decisions
        cors_origins: Allowed CORS origins

    Returns:
        Configured FastAPI application
    """
    config = config or get_config()
    bus = bus or get_event_bus()
    recorder = recorder or LoggingEventRecorder()

    app = FastAPI(
        title="CompanyOS Hub",
        description="Event distribution and change approval for AI-assisted teams",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    rooms = RoomManager(config.realtime)
    subscriptions = SubscriptionService(TopicPubSub(config.realtime.subscription_queue_size))
    classifier = ApprovalClassifier.from_config(config)

    app.state.config = config
    app.state.bus = bus
    app.state.recorder = recorder
    app.state.jwt_service = JWTService(config.auth)
    app.state.classifier = classifier
    app.state.rooms = rooms
    app.state.subscriptions = subscriptions
    app.state.bridge = RealtimeBridge(ChannelRouter(), rooms, subscriptions)
    app.state.agent_tasks = AgentTaskService(bus, classifier, recorder)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return create_error_response(exc.status_code, str(exc.detail), request=request)

    @app.exception_handler(AuthorizationError)
    async def authorization_error_handler(request: Request, exc: AuthorizationError):
        return create_error_response(exc.status_code, str(exc), request=request)

    @app.exception_handler(TaskStateError)
    async def task_state_error_handler(request: Request, exc: TaskStateError):
        return create_error_response(status.HTTP_409_CONFLICT, str(exc), request=request)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": " -> ".join(str(x) for x in error.get("loc", [])),
                "message": error.get("msg", "Validation error"),
            }
            for error in exc.errors()
        ]
        return create_error_response(
            status_code=422,
            error="Request validation failed",
            error_code=ErrorCodes.VALIDATION_ERROR,
            request=request,
            details={"validation_errors": errors},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}")
        logger.debug(traceback.format_exc())
        return create_error_response(500, "Internal server error", request=request)

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {
            "status": "healthy",
            "version": __version__,
            "connections": rooms.get_connection_stats(),
            "subscriptions": subscriptions.pubsub.iterator_count(),
            "bus_topics": bus.get_subscriptions(),
        }

    app.include_router(router, prefix=f"/api/{API_VERSION}")
    app.add_api_websocket_route("/ws", websocket_endpoint)

    return app
