"""
HTTP and WebSocket gateway for OpenChat

Thin FastAPI layer over ``ChatCore``: request validation, bearer-session
authentication, error to status mapping, and the ``/ws`` live channel that
feeds the session registry.
"""

import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field, ValidationError

from openchat.api.auth import SessionTokens
from openchat.errors import (
    AuthError,
    ConflictError,
    InvalidInputError,
    NotAuthenticated,
    NotFoundError,
    OpenChatError,
    PartialFailure,
    PermissionDenied,
    StoreUnreachable,
)
from openchat.models import FileMeta, GroupMessage, MessageKind
from openchat.services.accounts import AuthResult, ChatCore
from openchat.services.groups import GroupOutcome, group_summary
from openchat.services.presence import Session, SessionLimitReached
from openchat.services.router import live_payload
from openchat.utils.logging_config import get_logger

logger = get_logger(__name__)

STATUS_BY_ERROR = [
    (PartialFailure, 207),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidInputError, 400),
    (AuthError, 401),
    (PermissionDenied, 403),
    (StoreUnreachable, 503),
]

# WebSocket close codes
POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013


def status_for(error: OpenChatError) -> int:
    for cls, status in STATUS_BY_ERROR:
        if isinstance(error, cls):
            return status
    return 500


# Request models

class Credentials(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1)


class PushSubscriptionRequest(BaseModel):
    subscription: Dict[str, Any]


class LinkRequest(BaseModel):
    authenticator: str = Field(..., min_length=1)


class FilePayload(BaseModel):
    url: str
    name: str
    type: str
    size: Optional[int] = None

    def to_meta(self) -> FileMeta:
        return FileMeta(url=self.url, name=self.name, type=self.type, size=self.size)


class DirectMessageRequest(BaseModel):
    receiver: str = Field(..., alias="to", min_length=1)
    msg: Optional[str] = Field(default=None, max_length=5000)
    messageId: Optional[str] = None
    file: Optional[FilePayload] = None

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {"to": "bob", "msg": "Hello, Bob!"}
        }


class CreateGroupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    members: List[str] = Field(default_factory=list)


class GroupMessageRequest(BaseModel):
    msg: Optional[str] = Field(default=None, max_length=5000)
    messageId: Optional[str] = None
    file: Optional[FilePayload] = None


class AddMembersRequest(BaseModel):
    members: List[str] = Field(..., min_length=1)


# Response shaping

def session_view(result: AuthResult, token: str) -> Dict[str, Any]:
    return {
        "username": result.username,
        "authenticator": result.authenticator,
        "degraded": result.degraded,
        "token": token,
    }


def group_message_view(message: GroupMessage) -> Dict[str, Any]:
    view = {
        "id": message.id,
        "groupId": message.group_id,
        "from": message.sender,
        "msg": message.payload,
        "timestamp": message.timestamp.isoformat(),
        "isFileMessage": message.kind == MessageKind.FILE,
    }
    if message.file is not None:
        view.update({
            "fileUrl": message.file.url,
            "fileName": message.file.name,
            "fileType": message.file.type,
            "fileSize": message.file.size,
        })
    return view


def outcome_view(outcome: GroupOutcome) -> Dict[str, Any]:
    return {
        "group": group_summary(outcome.group),
        "added": outcome.added,
        "delivered": outcome.report.delivered,
        "failed": outcome.report.failed,
        "skipped": outcome.report.skipped,
    }


def create_app(
    core: Optional[ChatCore] = None,
    connect_directory: bool = True,
    tokens: Optional[SessionTokens] = None,
) -> FastAPI:
    """Build the gateway around ``core`` (a Mongo-backed core by default)."""
    core = core or ChatCore.from_settings()
    tokens = tokens or SessionTokens()
    bearer = HTTPBearer(auto_error=False)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting OpenChat gateway")
        await core.start(connect_directory=connect_directory)
        yield
        logger.info("Shutting down OpenChat gateway")
        await core.close()

    app = FastAPI(
        title="OpenChat API",
        description="Federated chat over user-owned MongoDB stores",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.core = core
    app.state.tokens = tokens

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(OpenChatError)
    async def handle_core_error(request: Request, exc: OpenChatError):
        status = status_for(exc)
        if status >= 500:
            logger.error("Request failed", path=request.url.path, error=exc.code, message=exc.message)
        else:
            logger.info("Request rejected", path=request.url.path, error=exc.code)
        body = exc.to_dict()
        if isinstance(exc, PartialFailure):
            body["failed"] = exc.failed
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, NotAuthenticated) else None
        return JSONResponse(status_code=status, content=body, headers=headers)

    async def current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> str:
        return tokens.resolve(credentials.credentials if credentials else None)

    # Accounts

    @app.post("/signup", tags=["Accounts"])
    async def signup(request: Credentials):
        result = await core.signup(request.username, request.password)
        return session_view(result, tokens.issue(result.username).token)

    @app.post("/login", tags=["Accounts"])
    async def login(request: Credentials):
        result = await core.login(request.username, request.password)
        return session_view(result, tokens.issue(result.username).token)

    @app.post("/check-auth", tags=["Accounts"])
    async def check_auth(request: Credentials):
        result = await core.check_auth(request.username, request.password)
        return session_view(result, tokens.issue(result.username).token)

    @app.post("/setup-password", tags=["Accounts"])
    async def setup_password(request: Credentials):
        result = await core.setup_password(request.username, request.password)
        return session_view(result, tokens.issue(result.username).token)

    @app.get("/session", tags=["Accounts"])
    async def session(user: str = Depends(current_user)):
        return {"username": user}

    @app.post("/logout", tags=["Accounts"])
    async def logout(
        user: str = Depends(current_user),
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    ):
        tokens.revoke(credentials.credentials)
        return {"offline": await core.logout(user)}

    @app.post("/subscribe", tags=["Accounts"])
    async def subscribe(request: PushSubscriptionRequest, user: str = Depends(current_user)):
        await core.subscribe_push(user, request.subscription)
        return {"status": "subscribed"}

    @app.get("/contacts", tags=["Accounts"])
    async def contacts(user: str = Depends(current_user)):
        result = await core.list_contacts(user)
        return {
            "users": [{"username": c.username, "online": c.online, "external": c.external} for c in result.users],
            "groups": [group_summary(g) for g in result.groups],
        }

    # Linking

    @app.post("/link-database", tags=["Linking"])
    async def link_database(request: LinkRequest, user: str = Depends(current_user)):
        result = await core.link_database(user, request.authenticator)
        return {
            "linkedUsername": result.linked_username,
            "state": result.state.value,
            "peerKeyKnown": result.peer_key_known,
        }

    @app.post("/reconcile", tags=["Linking"])
    async def reconcile(user: str = Depends(current_user)):
        report = await core.reconcile_links(user)
        return {
            "checked": report.checked,
            "repaired": report.reciprocal_repaired,
            "healed": report.keys_healed,
            "failed": report.failed,
        }

    # Direct messages

    @app.post("/messages", tags=["Messages"])
    async def send_message(request: DirectMessageRequest, user: str = Depends(current_user)):
        ack = await core.send_message(
            user,
            request.receiver,
            request.msg,
            kind=MessageKind.FILE if request.file else MessageKind.TEXT,
            file=request.file.to_meta() if request.file else None,
            message_id=request.messageId,
        )
        return {"messageId": ack.message_id, "deliveredLive": ack.delivered_live, "crossStore": ack.cross_store}

    @app.get("/messages/{peer}", tags=["Messages"])
    async def load_history(peer: str, user: str = Depends(current_user)):
        history = await core.load_history(user, peer)
        return [live_payload(m, m.payload, m.file) for m in history]

    # Groups

    @app.post("/groups", tags=["Groups"])
    async def create_group(request: CreateGroupRequest, user: str = Depends(current_user)):
        return outcome_view(await core.create_group(request.name, user, request.members))

    @app.get("/groups/{group_id}", tags=["Groups"])
    async def group_details(group_id: str, user: str = Depends(current_user)):
        details = await core.get_group_details(group_id, user)
        return {"group": group_summary(details.group), "availableContacts": details.available_contacts}

    @app.delete("/groups/{group_id}", tags=["Groups"])
    async def delete_group(group_id: str, user: str = Depends(current_user)):
        return outcome_view(await core.delete_group(group_id, user))

    @app.post("/groups/{group_id}/members", tags=["Groups"])
    async def add_members(group_id: str, request: AddMembersRequest, user: str = Depends(current_user)):
        outcome = await core.add_group_members(group_id, user, request.members)
        view = outcome_view(outcome)
        if not outcome.added:
            view["message"] = "All users are already members of this group"
        return view

    @app.post("/groups/{group_id}/messages", tags=["Groups"])
    async def group_message(group_id: str, request: GroupMessageRequest, user: str = Depends(current_user)):
        outcome = await core.group_message(
            group_id,
            user,
            request.msg,
            kind=MessageKind.FILE if request.file else MessageKind.TEXT,
            file=request.file.to_meta() if request.file else None,
            message_id=request.messageId,
        )
        view = outcome_view(outcome)
        view["message"] = group_message_view(outcome.message)
        return view

    @app.get("/groups/{group_id}/messages", tags=["Groups"])
    async def group_messages(group_id: str, user: str = Depends(current_user)):
        return [group_message_view(m) for m in await core.load_group_messages(group_id, user)]

    # Health

    @app.get("/health", tags=["General"])
    async def health():
        report = await core.health()
        if report.degraded:
            status = "degraded"
        elif report.healthy:
            status = "healthy"
        else:
            status = "unhealthy"
        body = {
            "status": status,
            "directory": "connected" if report.directory else "disconnected",
            "openStores": report.stores_open,
            "unreachableStores": report.stores_unreachable,
            "sessions": report.sessions,
        }
        return JSONResponse(status_code=503 if status == "unhealthy" else 200, content=body)

    # Live channel

    @app.websocket("/ws")
    async def live_channel(websocket: WebSocket, token: Optional[str] = Query(default=None)):
        try:
            username = tokens.resolve(token)
        except NotAuthenticated as e:
            logger.info("Live channel rejected", error=e.code)
            await websocket.close(code=POLICY_VIOLATION)
            return

        await websocket.accept()
        session_id = uuid.uuid4().hex

        async def send(event: str, data: Any) -> None:
            await websocket.send_json({"event": event, "data": data})

        try:
            core.sessions.connect(Session(username=username, send=send, session_id=session_id))
        except SessionLimitReached as e:
            await websocket.send_json({"event": "error", "data": {"error": "session_limit", "message": str(e)}})
            await websocket.close(code=TRY_AGAIN_LATER)
            return

        try:
            while True:
                try:
                    frame = json.loads(await websocket.receive_text())
                except json.JSONDecodeError:
                    await send("error", {"error": "invalid_input", "message": "Frames must be JSON"})
                    continue
                await _handle_frame(core, username, frame, send)
        except WebSocketDisconnect:
            pass
        finally:
            core.sessions.disconnect(username, session_id)
            await core.disconnect(username)

    return app


async def _handle_frame(core: ChatCore, username: str, frame: Dict[str, Any], send) -> None:
    """Dispatch one client frame ``{"event": ..., "data": {...}}`` sent as ``username``."""
    if not isinstance(frame, dict):
        await send("error", {"error": "invalid_input", "message": "Frames must be JSON objects"})
        return
    event = frame.get("event")
    data = frame.get("data") or {}
    try:
        if event in ("chat message", "file message"):
            request = DirectMessageRequest(**data)
            await core.send_message(
                username,
                request.receiver,
                request.msg,
                kind=MessageKind.FILE if request.file else MessageKind.TEXT,
                file=request.file.to_meta() if request.file else None,
                message_id=request.messageId,
            )
        elif event == "group message":
            request = GroupMessageRequest(**data)
            await core.group_message(
                data.get("groupId", ""),
                username,
                request.msg,
                kind=MessageKind.FILE if request.file else MessageKind.TEXT,
                file=request.file.to_meta() if request.file else None,
                message_id=request.messageId,
            )
        else:
            await send("error", {"error": "unknown_event", "message": f"Unknown event: {event}"})
    except ValidationError as e:
        await send("error", {"error": "invalid_input", "message": str(e)})
    except OpenChatError as e:
        await send("error", e.to_dict())
