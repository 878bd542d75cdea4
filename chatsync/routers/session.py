import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from chatsync.errors import AuthenticationRequired, NotParticipant
from chatsync.schemas.session import ClientFrame, ServerFrame
from chatsync.services.session import ChatSession
from chatsync.utils.change_feed import FeedHealth


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["chat"])

# token -> user id, or None when the token is not accepted
Authenticator = Callable[[str], Awaitable[Optional[str]]]


class SessionBridge:
    """Pumps one session's views to a websocket and its commands back in."""

    def __init__(self, websocket: WebSocket, session: ChatSession) -> None:
        self._websocket = websocket
        self._session = session
        self._outbox: "asyncio.Queue[ServerFrame]" = asyncio.Queue()
        self._unsubscribe = [
            session.current_messages.subscribe(self._push_messages),
            session.conversation_list.subscribe(self._push_conversations),
        ]
        session.subscriptions.watch_health(self._push_health)

    def _emit(self, type: str, data: Dict[str, Any]) -> None:
        self._outbox.put_nowait(ServerFrame(type=type, data=data))

    def _push_messages(self, items) -> None:
        self._emit(
            "messages",
            {
                "conversation_id": self._session.open_conversation_id,
                "items": [m.model_dump(mode="json") for m in items],
            },
        )

    def _push_conversations(self, items) -> None:
        self._emit(
            "conversations",
            {
                "items": [
                    dict(c.model_dump(mode="json"), unread_count=self._session.unread_count(c.id))
                    for c in items
                ],
            },
        )

    def _push_health(self, kind: str, health: FeedHealth) -> None:
        self._emit("health", {"feed": kind, "state": health.value})

    async def _pump(self) -> None:
        while True:
            frame = await self._outbox.get()
            await self._attach_profiles(frame)
            await self._websocket.send_text(frame.model_dump_json())

    async def _attach_profiles(self, frame: ServerFrame) -> None:
        # profiles come from the session cache; a failed lookup leaves them out
        items = frame.data.get("items") or []
        if frame.type == "messages":
            profiles = await self._session.profiles.get_many(m["sender_id"] for m in items)
            for m in items:
                sender = profiles.get(m["sender_id"])
                m["sender"] = sender.model_dump(mode="json") if sender else None
        elif frame.type == "conversations":
            profiles = await self._session.profiles.get_many(p for c in items for p in c["participant_ids"])
            for c in items:
                c["participants"] = [
                    profiles[p].model_dump(mode="json") for p in sorted(c["participant_ids"]) if p in profiles
                ]

    async def run(self) -> None:
        pump = asyncio.create_task(self._pump())
        try:
            await self._session.start()
            while True:
                text = await self._websocket.receive_text()
                try:
                    frame = ClientFrame.model_validate_json(text)
                except ValidationError as exc:
                    self._emit("error", {"code": "invalid_frame", "detail": str(exc)})
                    continue
                await self._dispatch(frame)
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

    async def _dispatch(self, frame: ClientFrame) -> None:
        try:
            result = await self._handle(frame)
        except NotParticipant as exc:
            self._emit("error", {"code": "not_participant", "detail": str(exc), "request_id": frame.request_id})
            return
        except ValueError as exc:
            self._emit("error", {"code": "invalid_request", "detail": str(exc), "request_id": frame.request_id})
            return
        self._emit("result", dict(result, command=frame.type, request_id=frame.request_id))

    async def _handle(self, frame: ClientFrame) -> Dict[str, Any]:
        session = self._session
        if frame.type == "open":
            if not frame.conversation_id:
                raise ValueError("conversation_id required")
            ok = await session.open_conversation(frame.conversation_id)
            return {"ok": ok, "error": _describe(session.synchronizer.last_error) if not ok else None}
        if frame.type == "close":
            session.close_conversation()
            return {"ok": True}
        if frame.type == "send":
            ok = await session.send_message(frame.content or "", frame.message_type, frame.media)
            return {"ok": ok}
        if frame.type == "mark_read":
            return {"ok": await session.mark_conversation_read()}
        if frame.type == "start_direct":
            if not frame.user_id:
                raise ValueError("user_id required")
            conversation = await session.start_direct_chat(frame.user_id)
            return {"ok": conversation is not None, "conversation_id": conversation.id if conversation else None}
        if frame.type == "create_group":
            conversation = await session.create_group(frame.participant_ids, frame.name)
            return {"ok": conversation is not None, "conversation_id": conversation.id if conversation else None}
        if frame.type == "edit":
            if not frame.message_id:
                raise ValueError("message_id required")
            return {"ok": await session.edit_message(frame.message_id, frame.content or "")}
        if frame.type == "delete":
            if not frame.message_id:
                raise ValueError("message_id required")
            return {"ok": await session.delete_message(frame.message_id)}
        # load_earlier
        return {"ok": True, "added": await session.load_earlier(frame.limit)}

    async def aclose(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        await self._session.aclose()


def _describe(error) -> Optional[str]:
    return str(error) if error else None


async def reject_all(token: str) -> Optional[str]:
    return None


@router.websocket("/session")
async def session_socket(websocket: WebSocket):
    state = websocket.app.state
    token = websocket.query_params.get("token")
    authenticate: Authenticator = getattr(state, "authenticate", reject_all)
    user_id = await authenticate(token) if token else None
    try:
        session = ChatSession(user_id, state.gateway, state.feed, state.settings)
    except AuthenticationRequired:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    bridge = SessionBridge(websocket, session)
    try:
        await bridge.run()
    except WebSocketDisconnect:
        logger.debug("Session socket for %s disconnected", user_id)
    except AuthenticationRequired:
        await websocket.close(code=4401)
    finally:
        await bridge.aclose()
