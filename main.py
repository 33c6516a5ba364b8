from __future__ import annotations
import os
import json, hashlib
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional, Any
from urllib.parse import urlencode
from uuid import UUID
from fastapi import FastAPI, HTTPException, Query, Depends, Request, Response
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from fastapi.concurrency import run_in_threadpool
from jose import JWTError
from sqlalchemy.exc import SQLAlchemyError
from pydantic import BaseModel, EmailStr
from starlette.middleware.base import BaseHTTPMiddleware

from db import make_engine, init_schema, ping
from models.user import Role, ROLE_RANK, UserCreate, UserRead, UserUpdate, UserListQuery
from services.directory import IdentityDirectory
from services.errors import DirectoryError
from services.user_repo import UserRepo
from utils.auth import hash_password, verify_password, create_access_token, decode_access_token
from utils.cache import RecordCache, build_cache_backend, CACHE_BACKEND, USER_CACHE_TTL, LIST_CACHE_TTL
from utils.membership import MembershipFilter, build_bloom_backend

port = int(os.environ.get("FASTAPIPORT", 8000))

logger = logging.getLogger("identity_directory_service")

class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):

        corr_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        request.state.correlation_id = corr_id

        logger.info(
            "Incoming request %s %s (correlation_id=%s)",
            request.method,
            request.url.path,
            corr_id,
        )

        response: Response = await call_next(request)
        response.headers["X-Correlation-ID"] = corr_id

        logger.info(
            "Outgoing response %s %s (status=%s, correlation_id=%s)",
            request.method,
            request.url.path,
            response.status_code,
            corr_id,
        )
        return response

def etag_for(obj) -> str:
    return hashlib.md5(json.dumps(obj, default=str, sort_keys=True).encode()).hexdigest()

def set_cache_headers(response: Response, ttl: int = 60, etag: str | None = None):
    response.headers["Cache-Control"] = f"private, max-age={ttl}"
    if etag:
        response.headers["ETag"] = etag

def _user_links(username: str):
    return {
        "self": {"href": f"/users/{username}"},
    }

def _rel_url(path: str, q: dict[str, Any]) -> str:
    query = urlencode({k: v for k, v in q.items() if v is not None})
    return f"{path}{('?' + query) if query else ''}"

# -----------------------------------------------------------------------------
# Startup / shutdown
# -----------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = make_engine()
    await init_schema(engine)
    cache = RecordCache(build_cache_backend())
    membership = MembershipFilter(build_bloom_backend(CACHE_BACKEND))
    await membership.provision()
    directory = IdentityDirectory(UserRepo(engine), cache, membership)
    seeded = await directory.seed_membership()
    logger.info("Directory ready (cache=%s, seeded=%d)", CACHE_BACKEND, seeded)
    app.state.engine = engine
    app.state.directory = directory
    try:
        yield
    finally:
        await cache.close()
        await membership.close()
        await engine.dispose()

app = FastAPI(
    title="Identity Directory API",
    description="User directory with role-based access and a cached lookup path",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(CorrelationIdMiddleware)

@app.exception_handler(DirectoryError)
async def directory_error_handler(request: Request, exc: DirectoryError):
    if exc.status_code >= 500:
        logger.error("Directory failure on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, "field": exc.field},
    )

def get_directory(request: Request) -> IdentityDirectory:
    return request.app.state.directory

def get_engine(request: Request):
    return request.app.state.engine

# -----------------------------------------------------------------------------
# Signup, login & principals
# -----------------------------------------------------------------------------

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"

class SignupResponse(Token):
    user: UserRead

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class CurrentPrincipal(BaseModel):
    id: UUID
    username: str
    role: Role

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

def _issue_token(user: UserRead) -> str:
    return create_access_token(user_id=str(user.id), username=user.username, role=user.role.value)

async def _principal_from_token(token: str, directory: IdentityDirectory) -> Optional[CurrentPrincipal]:
    try:
        payload = decode_access_token(token)
    except JWTError:
        return None
    sub = payload.get("sub")
    if not sub:
        return None
    # role comes from the store, not the token, so demotions apply immediately
    user = await directory.find_by_id(sub)
    if user is None:
        return None
    return CurrentPrincipal(id=user.id, username=user.username, role=user.role)

async def get_current_principal(
    token: str = Depends(oauth2_scheme),
    directory: IdentityDirectory = Depends(get_directory),
) -> CurrentPrincipal:
    principal = await _principal_from_token(token, directory)
    if principal is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return principal

def require_role(minimum: Role):
    async def dependency(principal: CurrentPrincipal = Depends(get_current_principal)) -> CurrentPrincipal:
        if ROLE_RANK[principal.role] < ROLE_RANK[minimum]:
            raise HTTPException(status_code=403, detail=f"{minimum.value.capitalize()} access required")
        return principal
    return dependency

@app.post("/auth/signup", response_model=SignupResponse, status_code=201)
async def signup(
    payload: UserCreate,
    response: Response,
    token: Optional[str] = Depends(optional_oauth2_scheme),
    directory: IdentityDirectory = Depends(get_directory),
):
    role = Role.VIEWER
    if await directory.count() == 0:
        role = Role.ADMIN
    elif token:
        creator = await _principal_from_token(token, directory)
        if creator is not None and creator.role is Role.ADMIN:
            # admin accounts are only made through a role change
            role = Role.EDITOR if payload.role is Role.EDITOR else Role.VIEWER

    hashed = await run_in_threadpool(hash_password, payload.password)
    user = await directory.create_record(payload.model_copy(update={"role": role}), password_hash=hashed)
    response.headers["Location"] = f"/users/{user.username}"
    return SignupResponse(user=user, access_token=_issue_token(user))

@app.post("/auth/login", response_model=Token)
async def login(payload: LoginRequest, directory: IdentityDirectory = Depends(get_directory)):
    user = await directory.find_credentials_by_email(payload.email)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    ok = await run_in_threadpool(verify_password, payload.password, user.password_hash)
    if not ok:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return Token(access_token=_issue_token(user))

# -----------------------------------------------------------------------------
# User endpoints
# -----------------------------------------------------------------------------

@app.get("/users/me", response_model=UserRead)
async def read_me(
    principal: CurrentPrincipal = Depends(require_role(Role.VIEWER)),
    directory: IdentityDirectory = Depends(get_directory),
):
    user = await directory.find_by_username(principal.username)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user

@app.get("/users/validate/{username}")
async def validate_username(username: str, directory: IdentityDirectory = Depends(get_directory)):
    return {"available": await directory.check_availability(username)}

@app.get("/users")
async def list_users(
    response: Response,
    page: int = Query(1, description="1-based page number"),
    limit: int = Query(20, description="Page size, clamped to 1..100"),
    sort: str = Query("createdAt", description="createdAt, username or email"),
    order: str = Query("desc", description="asc or desc"),
    role: Optional[Role] = Query(None, description="Filter by role"),
    search: Optional[str] = Query(None, description="Substring of username, email or full name"),
    principal: CurrentPrincipal = Depends(require_role(Role.EDITOR)),
    directory: IdentityDirectory = Depends(get_directory),
):
    result = await directory.list_paginated(
        UserListQuery(page=page, limit=limit, sort=sort, order=order, role=role, search=search)
    )
    meta = result.metadata

    items = []
    for u in result.items:
        d = u.model_dump(mode="json")
        d["_links"] = _user_links(u.username)
        items.append(d)

    base_q = {
        "page": meta.page, "limit": meta.limit, "sort": sort, "order": order,
        "role": role.value if role else None, "search": search,
    }
    collection_links = {"self": {"href": _rel_url("/users", base_q)}}
    if meta.page < meta.total_pages:
        collection_links["next"] = {"href": _rel_url("/users", {**base_q, "page": meta.page + 1})}
    if meta.page > 1:
        collection_links["prev"] = {"href": _rel_url("/users", {**base_q, "page": meta.page - 1})}

    set_cache_headers(response, ttl=LIST_CACHE_TTL, etag=etag_for(items))
    return {"items": items, "metadata": meta.model_dump(), "_links": collection_links}

@app.get("/users/{username}", response_model=UserRead)
async def get_user(
    username: str,
    response: Response,
    principal: CurrentPrincipal = Depends(require_role(Role.VIEWER)),
    directory: IdentityDirectory = Depends(get_directory),
):
    user = await directory.find_by_username(username)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    set_cache_headers(response, ttl=USER_CACHE_TTL, etag=etag_for(user.model_dump(mode="json")))
    return user

@app.patch("/users/{username}", response_model=UserRead)
async def update_user(
    username: str,
    update: UserUpdate,
    principal: CurrentPrincipal = Depends(require_role(Role.EDITOR)),
    directory: IdentityDirectory = Depends(get_directory),
):
    if update.role is not None and principal.role is not Role.ADMIN:
        raise HTTPException(status_code=403, detail="Only admins can update user roles")
    hashed = None
    if update.password is not None:
        hashed = await run_in_threadpool(hash_password, update.password)
    return await directory.update_record(username, update, password_hash=hashed)

@app.delete("/users/{username}", status_code=204)
async def delete_user(
    username: str,
    principal: CurrentPrincipal = Depends(require_role(Role.ADMIN)),
    directory: IdentityDirectory = Depends(get_directory),
):
    if not await directory.delete_record(username):
        raise HTTPException(status_code=404, detail="User not found")
    return Response(status_code=204)

# -----------------------------------------------------------------------------
# Root
# -----------------------------------------------------------------------------
@app.get("/")
def root():
    return {"message": "Welcome to the Identity Directory API. See /docs for OpenAPI UI."}

@app.get("/healthz")
async def healthz(engine=Depends(get_engine)):
    try:
        await ping(engine)
    except (SQLAlchemyError, OSError) as e:
        logger.error("Health check failed: %s", e)
        return JSONResponse(status_code=503, content={"status": "unavailable", "database": "down"})
    return {"status": "ok", "database": "up"}

# -----------------------------------------------------------------------------
# Entrypoint for `python main.py`
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=True)
