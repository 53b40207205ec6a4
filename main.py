import re
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, field_validator
from pymongo.database import Database
from pymongo.errors import PyMongoError

from accounts import public_account
from approval import ApprovalState, approval_state
from auth import TokenPair
from config import Settings
from content import MutationResult
from database import ensure_indexes, get_database, store_call
from errors import AppError, InvalidToken, InvalidTransition, Validation
from gateway import get_current_account, get_services, require_approved, require_role
from hashing import MAX_PASSWORD_BYTES
from logger import configure_logging, get_logger
from schemas import FinancialInstitution, InstitutionType
from services import Services
from tokens import ACCESS, REFRESH, Clock

logger = get_logger(__name__)

router = APIRouter(prefix="/api")
root_router = APIRouter()


# Request/Response Models
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=8)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("password")
    @classmethod
    def password_policy(cls, v: str) -> str:
        # at least one lowercase, one uppercase and one digit
        if not (re.search(r"[a-z]", v) and re.search(r"[A-Z]", v) and re.search(r"\d", v)):
            raise ValueError("Password must include upper and lower case letters and a digit")
        if len(v.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


class CreateInstitutionRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: InstitutionType
    description: str = Field(..., min_length=1, max_length=1000)
    location: str = Field(..., min_length=1)
    website: Optional[str] = Field(None, pattern=r"^https?://")
    logo: Optional[str] = None


class CreateReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=100)
    text: str = Field(..., min_length=1, max_length=1000)


class CreateCategoryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: str = Field(..., min_length=1, max_length=500)


class CreateThreadRequest(BaseModel):
    category_id: str
    title: str = Field(..., min_length=1, max_length=200)


class CreateCommentRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=1000)


# Helpers

def set_token_cookies(response: Response, pair: TokenPair, services: Services) -> None:
    settings = services.settings
    for name, token, key_class in (
        (settings.access_cookie_name, pair.access_token, ACCESS),
        (settings.refresh_cookie_name, pair.refresh_token, REFRESH),
    ):
        response.set_cookie(
            name,
            token,
            max_age=int(services.tokens.ttl(key_class).total_seconds()),
            httponly=True,
            secure=settings.cookie_secure,
            samesite="strict",
        )


def token_body(account: Dict, pair: TokenPair) -> Dict[str, Any]:
    return {
        "success": True,
        "access_token": pair.access_token,
        "refresh_token": pair.refresh_token,
        "token_type": pair.token_type,
        "user": public_account(account),
    }


def mutation_body(result: MutationResult, aggregate_key: str) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": result.data, aggregate_key: result.aggregate}
    if result.warnings:
        body["warnings"] = [w.to_dict() for w in result.warnings]
    return body


# Auth Routes
@router.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, response: Response, services: Services = Depends(get_services)):
    account, pair = services.auth.register(payload.name, payload.email, payload.password)
    set_token_cookies(response, pair, services)
    return token_body(account, pair)


@router.post("/auth/login")
def login(payload: LoginRequest, response: Response, services: Services = Depends(get_services)):
    account, pair = services.auth.login(payload.email, payload.password)
    set_token_cookies(response, pair, services)
    return token_body(account, pair)


@router.post("/auth/refresh")
def refresh(
    request: Request,
    response: Response,
    payload: Optional[RefreshRequest] = None,
    services: Services = Depends(get_services),
):
    token = (payload.refresh_token if payload else None) or request.cookies.get(
        services.settings.refresh_cookie_name
    )
    if not token:
        raise InvalidToken("Refresh token is missing")
    account, pair = services.auth.refresh(token)
    set_token_cookies(response, pair, services)
    return token_body(account, pair)


@router.get("/auth/logout")
def logout(
    response: Response,
    current_account=Depends(get_current_account),
    services: Services = Depends(get_services),
):
    settings = services.settings
    response.delete_cookie(settings.access_cookie_name, httponly=True, samesite="strict")
    response.delete_cookie(settings.refresh_cookie_name, httponly=True, samesite="strict")
    return {"success": True, "message": "Logged out"}


@router.get("/auth/me")
def me(current_account=Depends(get_current_account)):
    return {"success": True, "user": public_account(current_account)}


@router.post("/auth/approval-evidence")
def submit_approval_evidence(
    file: Optional[UploadFile] = File(None),
    current_account=Depends(get_current_account),
    services: Services = Depends(get_services),
):
    if approval_state(current_account) is ApprovalState.APPROVED:
        raise InvalidTransition("Account is already approved", kind="AlreadyApproved")
    previous = current_account.get("approvalEvidenceRef")
    ref = services.uploads.save(file)
    try:
        account = services.approvals.submit_evidence(str(current_account["_id"]), ref)
    except Exception:
        services.uploads.discard(ref)
        raise
    # only the latest evidence is kept
    if previous and previous != ref:
        services.uploads.discard(previous)
    return {"success": True, "data": {"approvalEvidenceRef": account["approvalEvidenceRef"]}}


# Admin Routes
@router.get("/auth/pending-users")
def list_pending_users(
    admin=Depends(require_role("admin")), services: Services = Depends(get_services)
):
    fields = ("id", "name", "email", "approvalEvidenceRef", "createdAt")
    users = []
    for u in services.approvals.list_pending():
        public = public_account(u)
        users.append({k: public[k] for k in fields})
    return {"success": True, "count": len(users), "data": users}


@router.put("/auth/approve-user/{account_id}")
def approve_user(
    account_id: str,
    admin=Depends(require_role("admin")),
    services: Services = Depends(get_services),
):
    account = services.approvals.approve(account_id)
    return {"success": True, "data": public_account(account)}


# Institutions and Reviews
@router.post("/institutions", status_code=201)
def create_institution(
    payload: CreateInstitutionRequest,
    admin=Depends(require_role("admin")),
    services: Services = Depends(get_services),
):
    fields = payload.model_dump(exclude_none=True)
    institution = services.content.create_institution(FinancialInstitution(**fields))
    return {"success": True, "data": institution}


@router.get("/institutions")
def list_institutions(services: Services = Depends(get_services)):
    institutions = services.content.list_institutions()
    return {"success": True, "count": len(institutions), "data": institutions}


@router.get("/institutions/{institution_id}")
def get_institution(institution_id: str, services: Services = Depends(get_services)):
    return {"success": True, "data": services.content.get_institution(institution_id)}


@router.post("/institutions/{institution_id}/reviews", status_code=201)
def create_review(
    institution_id: str,
    payload: CreateReviewRequest,
    current_account=Depends(require_approved),
    services: Services = Depends(get_services),
):
    result = services.content.create_review(
        current_account, institution_id, payload.rating, payload.title, payload.text
    )
    return mutation_body(result, "institution")


@router.delete("/reviews/{review_id}")
def delete_review(
    review_id: str,
    current_account=Depends(require_approved),
    services: Services = Depends(get_services),
):
    return mutation_body(services.content.delete_review(current_account, review_id), "institution")


# Categories, Threads and Comments
@router.post("/categories", status_code=201)
def create_category(
    payload: CreateCategoryRequest,
    admin=Depends(require_role("admin")),
    services: Services = Depends(get_services),
):
    return {"success": True, "data": services.content.create_category(payload.name, payload.description)}


@router.post("/threads", status_code=201)
def create_thread(
    payload: CreateThreadRequest,
    current_account=Depends(require_approved),
    services: Services = Depends(get_services),
):
    thread = services.content.create_thread(current_account, payload.category_id, payload.title)
    return {"success": True, "data": thread}


@router.get("/threads/{thread_id}")
def get_thread(thread_id: str, services: Services = Depends(get_services)):
    return {"success": True, "data": services.content.get_thread(thread_id)}


@router.get("/threads/{thread_id}/comments")
def list_comments(thread_id: str, services: Services = Depends(get_services)):
    comments = services.content.list_comments(thread_id)
    return {"success": True, "count": len(comments), "data": comments}


@router.post("/threads/{thread_id}/comments", status_code=201)
def create_comment(
    thread_id: str,
    payload: CreateCommentRequest,
    current_account=Depends(require_approved),
    services: Services = Depends(get_services),
):
    result = services.content.create_comment(current_account, thread_id, payload.content)
    return mutation_body(result, "thread")


@router.delete("/comments/{comment_id}")
def delete_comment(
    comment_id: str,
    current_account=Depends(require_approved),
    services: Services = Depends(get_services),
):
    return mutation_body(services.content.delete_comment(current_account, comment_id), "thread")


@router.post("/comments/{comment_id}/helpful")
def toggle_helpful(
    comment_id: str,
    response: Response,
    current_account=Depends(get_current_account),
    services: Services = Depends(get_services),
):
    result = services.content.toggle_helpful(current_account, comment_id)
    response.status_code = 201 if result.created else 200
    body = mutation_body(result, "comment")
    body["helpful"] = result.created
    return body


# Bootstrap route for first deploy
@root_router.post("/init/bootstrap", status_code=201)
def bootstrap_admin(services: Services = Depends(get_services)):
    """Create the configured admin (ADMIN_EMAIL / ADMIN_PASSWORD) if none exists."""
    settings = services.settings
    if not settings.admin_email or not settings.admin_password:
        raise Validation("ADMIN_EMAIL and ADMIN_PASSWORD are not configured")
    account = services.auth.bootstrap_admin(
        settings.admin_name, settings.admin_email, settings.admin_password
    )
    return {"success": True, "message": "Admin created", "user": public_account(account)}


# Utility endpoints
@root_router.get("/")
def root():
    return {"message": "Financial Institution Reviews API running"}


@root_router.get("/test")
def test_database(services: Services = Depends(get_services)):
    try:
        with store_call(services.settings.db_timeout_seconds):
            collections = services.db.list_collection_names()
        return {"backend": "ok", "database": "ok", "collections": collections}
    except (PyMongoError, AppError) as e:
        return {"backend": "ok", "database": f"error: {type(e).__name__}"}


# Error handling
def error_response(status_code: int, error: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.kind)
    return error_response(exc.status_code, exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # input values are left out so submitted passwords never echo back
    fields: List[Dict[str, Any]] = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()
    ]
    error = Validation("Request validation failed").to_dict()
    error["fields"] = fields
    return error_response(422, error)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, AppError("Internal server error").to_dict())


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    settings = (settings or Settings.from_env()).check()
    configure_logging(settings.log_level)
    if db is None:
        db = get_database(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure_indexes(app.state.services.db)
        yield

    app = FastAPI(title="Financial Institution Reviews API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = Services.build(settings, db, clock)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    app.include_router(root_router)
    return app


if __name__ == "__main__":
    import os

    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run("asgi:app", host="0.0.0.0", port=port)
