"""
FastAPI application for ChillChat: accounts, friends, chats, the real-time
message relay and time-boxed file shares.
"""
import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import (
    FastAPI, UploadFile, File, Form, Request, WebSocket, WebSocketDisconnect, Query, Depends, Header
)
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from pydantic import ValidationError as SchemaError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

import chats
import file_shares
import users
from cleanup import cleanup_loop
from config import settings
from connection_manager import ConnectionManager
from database import init_db, connection
from errors import ChillChatError, Forbidden, NotFound, Unauthorized, ValidationError
from models import (
    UserCreate, UserOut, UserCreated, FriendRequestCreate, DirectChatCreate, GroupChatCreate,
    ChatOut, MessageOut, ShareResponse, ShareInfo, SocketEvent,
)
from object_storage import LocalObjectStorage
from relay import MessageRelay
from security import sanitize_filename, sanitize_input, validate_share_upload, log_security_event

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Rate limiter setup
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)


async def persist_presence(user_id: int, online: bool):
    async with connection() as db:
        await users.set_presence(db, user_id, online)


# ============ LIFESPAN CONTEXT ============
@asynccontextmanager
async def lifespan(app):
    """Initialize database, shared services and the cleanup worker."""
    await init_db()
    async with connection() as db:
        stale = await users.reset_presence(db)
    if stale:
        logger.info(f"Cleared stale online flag for {stale} users")
    app.state.storage = LocalObjectStorage(settings.STORAGE_PATH, settings.PUBLIC_BASE_URL)
    app.state.manager = ConnectionManager(presence_hook=persist_presence)
    app.state.relay = MessageRelay(app.state.manager)
    cleanup_task = asyncio.create_task(cleanup_loop(app.state.storage))
    logger.info(f"{settings.APP_NAME} started successfully")
    yield
    cleanup_task.cancel()
    logger.info(f"{settings.APP_NAME} shutting down")


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ChillChatError)
async def chillchat_error_handler(request: Request, exc: ChillChatError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        if not settings.DEBUG:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS)


# ============ DEPENDENCIES ============

async def get_database():
    async with connection() as db:
        yield db


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthorized("Expected a Bearer token")
    return token.strip()


async def current_user(authorization: Optional[str] = Header(None), db=Depends(get_database)) -> dict:
    return await users.authenticate(db, _bearer(authorization))


def with_live_presence(request: Request, user: dict) -> dict:
    """Report online state from the connection registry, not the stored flag."""
    return {**user, "online": request.app.state.manager.is_user_online(user["id"])}


@app.get("/health")
async def health():
    return {"status": "ok"}


# ============ USERS & FRIENDS ============

@app.post("/users", response_model=UserCreated, status_code=201)
async def register_user(body: UserCreate, db=Depends(get_database)):
    user, token = await users.create_user(db, sanitize_input(body.name, max_length=50), body.email)
    return {**user, "api_token": token}


@app.get("/users/me", response_model=UserOut)
async def me(request: Request, user: dict = Depends(current_user)):
    return with_live_presence(request, user)


@app.get("/users/{user_code}", response_model=UserOut)
async def lookup_user(request: Request, user_code: str, user: dict = Depends(current_user),
                      db=Depends(get_database)):
    return with_live_presence(request, await users.find_by_code(db, user_code))


@app.post("/friends/requests", status_code=201)
async def send_friend_request(body: FriendRequestCreate, user: dict = Depends(current_user),
                              db=Depends(get_database)):
    return await users.send_friend_request(db, user, body.user_code)


@app.get("/friends/requests")
async def pending_friend_requests(user: dict = Depends(current_user), db=Depends(get_database)):
    return await users.list_friend_requests(db, user["id"])


@app.post("/friends/requests/{request_id}/accept")
async def accept_friend_request(request_id: int, user: dict = Depends(current_user),
                                db=Depends(get_database)):
    request = await users.respond_friend_request(db, user, request_id, accept=True)
    chat = await chats.get_or_create_direct_chat(db, request["from_user_id"], request["to_user_id"])
    return {"request": request, "chat": chat}


@app.post("/friends/requests/{request_id}/reject")
async def reject_friend_request(request_id: int, user: dict = Depends(current_user),
                                db=Depends(get_database)):
    return {"request": await users.respond_friend_request(db, user, request_id, accept=False)}


@app.get("/friends", response_model=List[UserOut])
async def friends(request: Request, user: dict = Depends(current_user), db=Depends(get_database)):
    return [with_live_presence(request, friend) for friend in await users.list_friends(db, user["id"])]


@app.get("/presence/online")
async def online_users(request: Request):
    connected = request.app.state.manager.online_users()
    return {"online_users": connected, "count": len(connected)}


# ============ CHATS ============

@app.post("/chats/direct", response_model=ChatOut)
async def open_direct_chat(body: DirectChatCreate, user: dict = Depends(current_user),
                           db=Depends(get_database)):
    other = await users.find_by_code(db, body.user_code)
    return await chats.get_or_create_direct_chat(db, user["id"], other["id"])


@app.post("/chats/group", response_model=ChatOut, status_code=201)
async def create_group_chat(body: GroupChatCreate, user: dict = Depends(current_user),
                            db=Depends(get_database)):
    member_ids = [(await users.find_by_code(db, code))["id"] for code in body.member_codes]
    return await chats.create_group_chat(db, user["id"], sanitize_input(body.name, max_length=100),
                                         member_ids)


@app.get("/chats", response_model=List[ChatOut])
async def my_chats(user: dict = Depends(current_user), db=Depends(get_database)):
    return await chats.list_chats(db, user["id"])


@app.get("/chats/{chat_id}/messages", response_model=List[MessageOut])
async def chat_history(chat_id: int, limit: int = Query(settings.HISTORY_PAGE_SIZE, ge=1, le=200),
                       before_id: Optional[int] = None, user: dict = Depends(current_user),
                       db=Depends(get_database)):
    await chats.require_participant(db, chat_id, user["id"])
    return await chats.list_messages(db, chat_id, limit=limit, before_id=before_id)


# ============ FILE SHARES ============

@app.post("/files/upload", response_model=ShareResponse, status_code=201)
@limiter.limit(settings.UPLOAD_RATE_LIMIT)
async def upload_file(
    request: Request,
    file: UploadFile = File(...),
    max_downloads: Optional[int] = Form(None),
    user: dict = Depends(current_user),
    db=Depends(get_database),
):
    """Store a ZIP archive and issue a share code for it."""
    safe_filename = sanitize_filename(file.filename or "unnamed.zip")
    data = await file.read()
    validate_share_upload(safe_filename, file.content_type or "", data, settings.MAX_UPLOAD_SIZE)

    storage: LocalObjectStorage = request.app.state.storage
    stored = storage.put(data, safe_filename)
    meta = file_shares.FileMeta(
        file_name=stored.public_id,
        original_name=safe_filename,
        file_size=stored.size,
        file_url=stored.url,
        public_id=stored.public_id,
        content_type=file.content_type,
    )
    try:
        share = await file_shares.issue_share(db, user["id"], meta, max_downloads=max_downloads)
    except ChillChatError:
        storage.delete(stored.public_id)
        raise

    return {
        "share_code": share.share_code,
        "expires_at": share.expires_at.isoformat(),
        "max_downloads": share.max_downloads,
    }


@app.get("/files/download/{share_code}")
@limiter.limit(settings.DOWNLOAD_RATE_LIMIT)
async def download_file(request: Request, share_code: str, user: dict = Depends(current_user),
                        db=Depends(get_database)):
    """Consume one download and redirect to the stored object."""
    try:
        share = await file_shares.find_share(db, share_code)
    except NotFound:
        log_security_event("invalid_share_code", {"code": share_code[:3] + "***"})
        raise
    origin = request.client.host if request.client else None
    share = await file_shares.record_download(db, share, user["id"], origin)
    return RedirectResponse(f"{share.file_url}?ticket={share.ticket}", status_code=302)


@app.get("/files/info/{share_code}", response_model=ShareInfo)
async def share_metadata(share_code: str, db=Depends(get_database)):
    share = await file_shares.find_share(db, share_code)
    return file_shares.share_info(share)


@app.get("/files/mine", response_model=List[ShareInfo])
async def my_shares(user: dict = Depends(current_user), db=Depends(get_database)):
    return [file_shares.share_info(share) for share in await file_shares.list_uploads(db, user["id"])]


@app.get("/files/{share_code}/downloads")
async def share_downloads(share_code: str, user: dict = Depends(current_user), db=Depends(get_database)):
    """Download history of a share, visible to its uploader only."""
    share = await file_shares.find_share(db, share_code)
    if share.uploader_id != user["id"]:
        raise Forbidden("Only the uploader can see download history")
    return await file_shares.list_downloads(db, share.id)


@app.delete("/files/{share_code}", response_model=ShareInfo)
async def revoke_share(share_code: str, user: dict = Depends(current_user), db=Depends(get_database)):
    share = await file_shares.find_share(db, share_code)
    share = await file_shares.deactivate_share(db, share, user["id"])
    return file_shares.share_info(share)


@app.get("/objects/{public_id}")
async def serve_object(request: Request, public_id: str, ticket: Optional[str] = Query(None),
                       db=Depends(get_database)):
    """Serve stored bytes once per counted download."""
    public_id = sanitize_input(public_id, max_length=100)
    path = request.app.state.storage.path_for(public_id)
    try:
        await file_shares.redeem_ticket(db, public_id, ticket)
    except ChillChatError:
        log_security_event("object_fetch_refused", {"public_id": public_id})
        raise
    return FileResponse(path=path, filename=path.name, media_type="application/octet-stream")


# ============ REAL-TIME RELAY ============

@app.websocket("/ws/chat")
async def websocket_chat(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    WebSocket endpoint for presence and chat relay.
    Connect with: ws://host/ws/chat?token=API_TOKEN
    """
    try:
        async with connection() as db:
            user = await users.authenticate(db, token)
    except ChillChatError as e:
        await websocket.close(code=1008, reason=e.detail)
        return

    manager: ConnectionManager = websocket.app.state.manager
    relay: MessageRelay = websocket.app.state.relay
    connection_id = uuid.uuid4().hex

    await websocket.accept()
    await manager.register_connection(connection_id, user["id"], websocket)

    # Rate limiting: WS_MESSAGE_BURST messages per WS_MESSAGE_WINDOW_SECONDS
    message_timestamps = []
    try:
        while True:
            data = await websocket.receive_text()

            now = time.monotonic()
            message_timestamps = [t for t in message_timestamps
                                  if now - t < settings.WS_MESSAGE_WINDOW_SECONDS]
            if len(message_timestamps) >= settings.WS_MESSAGE_BURST:
                await manager.send_to_connection(connection_id, {
                    "type": "error",
                    "code": "rate_limited",
                    "detail": "Rate limit exceeded. Please slow down.",
                })
                continue
            message_timestamps.append(now)

            try:
                event = SocketEvent(**json.loads(data))
            except (json.JSONDecodeError, TypeError, SchemaError):
                await manager.send_to_connection(
                    connection_id, ValidationError("Malformed event").to_event()
                )
                continue

            if event.type == "join_room":
                await relay.join_room(connection_id, event.chat_id)
            elif event.type == "send_message":
                await relay.relay_message(connection_id, event.model_dump())
            elif event.type == "mark_read":
                await relay.mark_read(connection_id, event.chat_id)
            elif event.type == "ping":
                await manager.send_to_connection(connection_id, {"type": "pong"})
            else:
                await manager.send_to_connection(
                    connection_id, ValidationError(f"Unknown event: {event.type}").to_event()
                )

    except WebSocketDisconnect:
        pass
    finally:
        await manager.unregister_connection(connection_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
