import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from assistant import ChatContext, Responder, create_responder, task_stats
from auth import AuthService, TokenUser, current_user, get_auth_service
from config import Settings, load_settings
from database import Store, create_store
from errors import AppError, NotFoundError, ValidationError
from models import (
    ChatRequest,
    Credentials,
    ForgotPasswordRequest,
    ResetPasswordRequest,
    Task,
    TaskCreate,
    TaskUpdate,
    VerifyOtpRequest,
)
from notifier import Notifier, create_notifier

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    notifier: Optional[Notifier] = None,
    responder: Optional[Responder] = None,
    clock: Optional[Callable] = None,
) -> FastAPI:
    """Build the API. Collaborators default to what the settings select."""
    settings = settings or load_settings()
    if settings.jwt_secret == Settings().jwt_secret:
        logger.warning("JWT_SECRET is not set; using the development secret")

    store = store if store is not None else create_store(settings)
    notifier = notifier or create_notifier(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("API ready (store: %s)", type(app.state.store).__name__)
        yield

    app = FastAPI(title="Taskmate", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.auth = AuthService(store, notifier, settings, clock=clock)
    app.state.responder = responder or create_responder(settings)
    app.state.today = date.today

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    register_routes(app)
    return app


def _failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _failure(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "path", "query"))
        message = f"Invalid {field}: {first.get('msg')}" if field else "Invalid request body"
        return _failure(400, message)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _failure(500, "Server error")


# Dependencies

def get_store(request: Request) -> Store:
    return request.app.state.store


def get_responder(request: Request) -> Responder:
    return request.app.state.responder


def register_routes(app: FastAPI) -> None:
    # Auth

    @app.post("/api/auth/register")
    def register(body: Optional[Credentials] = None, auth: AuthService = Depends(get_auth_service)) -> dict:
        body = body or Credentials()
        token, user = auth.register(body.email, body.password)
        return {"success": True, "token": token, "user": user.model_dump(exclude={"created_at"})}

    @app.post("/api/auth/login")
    def login(body: Optional[Credentials] = None, auth: AuthService = Depends(get_auth_service)) -> dict:
        body = body or Credentials()
        token, user = auth.login(body.email, body.password)
        return {"success": True, "token": token, "user": user.model_dump(exclude={"created_at"})}

    @app.post("/api/auth/forgot-password")
    def forgot_password(
        body: Optional[ForgotPasswordRequest] = None,
        auth: AuthService = Depends(get_auth_service),
    ) -> dict:
        body = body or ForgotPasswordRequest()
        return {"success": True, "message": auth.forgot_password(body.email)}

    @app.post("/api/auth/verify-otp")
    def verify_otp(body: Optional[VerifyOtpRequest] = None, auth: AuthService = Depends(get_auth_service)) -> dict:
        body = body or VerifyOtpRequest()
        reset_token = auth.verify_otp(body.email, body.otp)
        return {"success": True, "message": "OTP verified successfully", "resetToken": reset_token}

    @app.post("/api/auth/reset-password")
    def reset_password(
        body: Optional[ResetPasswordRequest] = None,
        auth: AuthService = Depends(get_auth_service),
    ) -> dict:
        body = body or ResetPasswordRequest()
        auth.reset_password(body.email, body.new_password, body.reset_token)
        return {"success": True, "message": "Password reset successfully"}

    @app.get("/api/auth/me")
    def me(user: TokenUser = Depends(current_user), auth: AuthService = Depends(get_auth_service)) -> dict:
        return {"success": True, "user": auth.me(user).model_dump(by_alias=True)}

    # Tasks

    @app.get("/api/tasks")
    def list_tasks(user: TokenUser = Depends(current_user), store: Store = Depends(get_store)) -> list[Task]:
        return store.list_tasks(user.user_id)

    @app.post("/api/tasks", status_code=201)
    def create_task(
        body: Optional[TaskCreate] = None,
        user: TokenUser = Depends(current_user),
        store: Store = Depends(get_store),
    ) -> Task:
        body = body or TaskCreate()
        title = (body.title or "").strip()
        if not title:
            raise ValidationError("Title is required")
        fields = body.model_dump(exclude_none=True)
        fields["title"] = title
        task = store.insert_task(user.user_id, fields)
        logger.info("Task %s created for user %s", task.id, user.user_id)
        return task

    @app.put("/api/tasks/{task_id}")
    def update_task(
        task_id: int,
        body: Optional[TaskUpdate] = None,
        user: TokenUser = Depends(current_user),
        store: Store = Depends(get_store),
    ) -> Task:
        changes = body.changes() if body else {}
        if "title" in changes:
            changes["title"] = changes["title"].strip()
            if not changes["title"]:
                raise ValidationError("Title is required")
        task = store.update_task(task_id, user.user_id, changes)
        if task is None:
            raise NotFoundError("Task not found")
        return task

    @app.patch("/api/tasks/{task_id}/toggle")
    def toggle_task(
        task_id: int,
        user: TokenUser = Depends(current_user),
        store: Store = Depends(get_store),
    ) -> Task:
        task = store.toggle_task(task_id, user.user_id)
        if task is None:
            raise NotFoundError("Task not found")
        return task

    @app.delete("/api/tasks/{task_id}")
    def delete_task(
        task_id: int,
        user: TokenUser = Depends(current_user),
        store: Store = Depends(get_store),
    ) -> dict:
        if not store.delete_task(task_id, user.user_id):
            raise NotFoundError("Task not found")
        logger.info("Task %s deleted by user %s", task_id, user.user_id)
        return {"success": True, "message": "Task deleted"}

    # Assistant

    @app.post("/api/chatbot")
    async def chatbot(
        request: Request,
        body: Optional[ChatRequest] = None,
        user: TokenUser = Depends(current_user),
        store: Store = Depends(get_store),
        responder: Responder = Depends(get_responder),
    ) -> dict:
        """Answer a chat message using the caller's own tasks as context."""
        message = ((body.message if body else None) or "").strip()
        if not message:
            raise ValidationError("Message is required")

        tasks = store.list_tasks(user.user_id)
        context = ChatContext(email=user.email, tasks=tasks, today=request.app.state.today())
        reply = await responder.respond(message, context)
        return {"success": True, "response": reply, "taskStats": task_stats(tasks, context.today)}

    @app.get("/api/health")
    def health() -> dict:
        return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    from logging_setup import setup_logging

    settings = load_settings()
    setup_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
