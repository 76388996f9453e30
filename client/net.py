import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from cryptography.exceptions import InvalidTag

from common.crypto import aes_key, rsa_wrap_key, encrypt_body, decrypt_body
from common.errors import DuplicateUsernameError, RequestError
from common.messages import Frame
from common.protocol import MAX_FRAME, read_json, write_json
from common.schema import Account, Group, StoredMessage, UserRef
from client.events import Event, parse_event
from client.session import Conversation

log = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]


class NetClient:
    ''' Network client for the chat server: request/response calls plus a stream of realtime events '''
    def __init__(self, host: str, port: int, username: str, full_name: str = "",
                 timeout: float = 10.0, on_event: Optional[EventHandler] = None):
        self.host, self.port, self.username = host, port, username
        self.full_name = full_name or username
        self.timeout = timeout
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.session_key: Optional[bytes] = None   # AES session key after key-exchange
        self.running = False
        self.closing = False
        self.on_disconnect: Optional[Callable[[], None]] = None
        self._pending: Dict[str, asyncio.Future] = {}
        # events wait in the queue until a handler is attached, then replay in order
        self._events: asyncio.Queue = asyncio.Queue()
        self._handler_ready = asyncio.Event()
        self._on_event: Optional[EventHandler] = None
        self._tasks: List[asyncio.Task] = []
        if on_event:
            self.on_event = on_event

    @property
    def on_event(self) -> Optional[EventHandler]:
        return self._on_event

    @on_event.setter
    def on_event(self, cb: Optional[EventHandler]):
        self._on_event = cb
        if cb:
            self._handler_ready.set()
        else:
            self._handler_ready.clear()

    async def connect(self) -> Account:
        '''
        Open the connection and run the handshake:
        auth -> server RSA key -> wrapped AES session key -> welcome (account record).
        Raises DuplicateUsernameError if the account already has a live connection.
        '''
        self.reader, self.writer = await asyncio.open_connection(self.host, self.port, limit=MAX_FRAME)
        await write_json(self.writer, Frame("auth", payload={"username": self.username,
                                                             "fullName": self.full_name}).to_dict())
        env = await read_json(self.reader)
        if env.get("type") == "error":
            code = (env.get("payload") or {}).get("code")
            await self._close_writer()
            if code == "DUPLICATE_USERNAME":
                raise DuplicateUsernameError()
            raise RequestError(code or "ERROR", f"Server error: {code}")

        server_pub = env["payload"]["server_pub_pem"]
        self.session_key = aes_key()
        wrapped = rsa_wrap_key(server_pub, self.session_key)
        await write_json(self.writer, Frame("key", sender=self.username,
                                            payload={"wrapped": wrapped}).to_dict())

        env = await read_json(self.reader)
        if env.get("type") != "welcome":
            await self._close_writer()
            raise RequestError("EXPECT_WELCOME", f"unexpected frame {env.get('type')!r}")
        account = Account.model_validate(decrypt_body(self.session_key, env["payload"])["account"])

        self.running = True
        self.closing = False
        self._tasks = [asyncio.create_task(self._recv_loop()), asyncio.create_task(self._pump())]
        return account

    async def close(self):
        self.closing = True
        if self.writer and self.running:
            try:
                await write_json(self.writer, Frame("system", sender=self.username,
                                                    payload={"event": "leave"}).to_dict())
            except (ConnectionError, OSError):
                pass
        self.running = False
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        self._fail_pending(ConnectionError("connection closed"))
        await self._close_writer()

    async def _close_writer(self):
        if self.writer is None:
            return
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        self.writer = None

    def _fail_pending(self, exc: Exception):
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(exc)
        self._pending.clear()

    async def request(self, action: str, **params) -> Any:
        '''
        Send one request and wait for its response.
        Raises RequestError when the server refuses it or it times out, ConnectionError when offline.
        '''
        if not self.running or self.writer is None:
            raise ConnectionError("not connected")
        req_id = uuid.uuid4().hex
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        body = {"id": req_id, "action": action, "params": params}
        try:
            await write_json(self.writer, Frame("req", sender=self.username,
                                                payload=encrypt_body(self.session_key, body)).to_dict())
            return await asyncio.wait_for(fut, self.timeout)
        except asyncio.TimeoutError:
            raise RequestError("TIMEOUT", f"{action} timed out after {self.timeout:g}s")
        finally:
            self._pending.pop(req_id, None)

    async def _recv_loop(self):
        ''' Read frames until the connection drops; responses resolve futures, events go to the queue '''
        try:
            while self.running:
                env = await read_json(self.reader)
                t = env.get("type")
                if t == "res":
                    self._resolve(decrypt_body(self.session_key, env["payload"]))
                elif t == "event":
                    body = decrypt_body(self.session_key, env["payload"])
                    try:
                        self._events.put_nowait(parse_event(body["event"], body.get("data")))
                    except (ValueError, KeyError) as e:
                        log.debug("dropping event %r: %s", body.get("event"), e)
                elif t == "system":
                    log.info("server: %s", (env.get("payload") or {}).get("text", ""))
                elif t == "error":
                    log.warning("server error: %s", (env.get("payload") or {}).get("code"))
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError, ValueError, KeyError, InvalidTag) as e:
            log.info("disconnected: %s", e)
        self.running = False
        self._fail_pending(ConnectionError("disconnected"))
        if self.on_disconnect and not self.closing:
            self.on_disconnect()

    def _resolve(self, body: Dict[str, Any]):
        fut = self._pending.get(body.get("id"))
        if fut is None or fut.done():
            return
        if body.get("ok"):
            fut.set_result(body.get("data"))
        else:
            err = body.get("error") or {}
            fut.set_exception(RequestError(err.get("code", "ERROR"), err.get("message")))

    async def _pump(self):
        while True:
            event = await self._events.get()
            await self._handler_ready.wait()
            try:
                await self._on_event(event)
            except Exception:
                # a failing handler must not stop later events from being delivered
                log.exception("event handler failed for %s", type(event).__name__)

    # ---------- account collaborator ----------

    async def store_keys(self, public_key: str, private_key: Optional[str] = None) -> None:
        await self.request("auth.storeKeys", publicKey=public_key, privateKey=private_key)

    async def fetch_public_key(self, user_id: str) -> Optional[str]:
        data = await self.request("auth.publicKey", userId=user_id)
        return (data or {}).get("publicKey")

    # ---------- persistence collaborator ----------

    async def contacts(self) -> List[UserRef]:
        return [UserRef.model_validate(u) for u in await self.request("messages.contacts")]

    async def chats(self) -> List[UserRef]:
        return [UserRef.model_validate(u) for u in await self.request("messages.chats")]

    async def fetch_messages(self, conversation: Conversation) -> List[StoredMessage]:
        if conversation.is_group:
            data = await self.request("groups.messages", groupId=conversation.ref)
        else:
            data = await self.request("messages.list", userId=conversation.ref)
        return [StoredMessage.model_validate(m) for m in data]

    async def submit_message(self, conversation: Conversation, payload: Dict[str, Any]) -> StoredMessage:
        if conversation.is_group:
            data = await self.request("groups.send", groupId=conversation.ref, message=payload)
        else:
            data = await self.request("messages.send", userId=conversation.ref, message=payload)
        return StoredMessage.model_validate(data)

    async def delete_message(self, conversation: Conversation, message_id: str) -> None:
        if conversation.is_group:
            await self.request("groups.deleteMessage", groupId=conversation.ref, messageId=message_id)
        else:
            await self.request("messages.delete", messageId=message_id)

    # ---------- groups ----------

    async def list_groups(self) -> List[Group]:
        return [Group.model_validate(g) for g in await self.request("groups.list")]

    async def create_group(self, name: str, description: str = "", member_ids: Optional[List[str]] = None) -> Group:
        data = await self.request("groups.create", name=name, description=description,
                                  memberIds=list(member_ids or []))
        return Group.model_validate(data)

    async def update_group(self, group_id: str, **fields) -> Group:
        return Group.model_validate(await self.request("groups.update", groupId=group_id, **fields))

    async def delete_group(self, group_id: str) -> None:
        await self.request("groups.delete", groupId=group_id)

    async def add_members(self, group_id: str, member_ids: List[str]) -> Group:
        data = await self.request("groups.addMembers", groupId=group_id, memberIds=list(member_ids))
        return Group.model_validate(data)

    async def remove_member(self, group_id: str, user_id: str) -> Group:
        data = await self.request("groups.removeMember", groupId=group_id, userId=user_id)
        return Group.model_validate(data)

    async def update_member_role(self, group_id: str, user_id: str, role: str) -> Group:
        data = await self.request("groups.updateRole", groupId=group_id, userId=user_id, role=role)
        return Group.model_validate(data)

    async def leave_group(self, group_id: str) -> None:
        await self.request("groups.leave", groupId=group_id)

    # ---------- realtime intents ----------

    async def join_room(self, group_id: str) -> None:
        await self.request("rooms.join", groupId=group_id)

    async def leave_room(self, group_id: str) -> None:
        await self.request("rooms.leave", groupId=group_id)
