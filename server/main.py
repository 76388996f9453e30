"""
Reference chat server: accounts, message persistence and realtime fanout, all in memory.
One thread per connection. After the key exchange every req/res/event payload
is encrypted with the connection's AES session key.
"""
import argparse
import logging
import socket
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from cryptography.exceptions import InvalidTag

from common.config import load_settings
from common.crypto import rsa_generate, rsa_public_pem, rsa_unwrap_key, decrypt_body, encrypt_body
from common.errors import RequestError
from common.messages import Frame
from common.protocol import send_json, recv_json, drop_buffer
from server.state import ServerState, Client
from server.store import ChatStore

log = logging.getLogger(__name__)

HOST = "0.0.0.0"
PORT = 5050

Handler = Callable[[Client, Dict[str, Any]], Any]


def _error(code: str, to: Optional[str] = None) -> dict:
    return Frame("error", to=to, payload={"code": code}).to_dict()


class ChatServer:
    def __init__(self, host: str = HOST, port: int = PORT, store: Optional[ChatStore] = None):
        self.host, self.port = host, port
        self.state = ServerState()
        self.store = store or ChatStore()
        self.rsa_priv = rsa_generate()
        self.rsa_pub_pem = rsa_public_pem(self.rsa_priv)
        self.srv: Optional[socket.socket] = None
        self.running = False
        self.handlers: Dict[str, Handler] = {
            "auth.me": self.auth_me,
            "auth.storeKeys": self.auth_store_keys,
            "auth.publicKey": self.auth_public_key,
            "messages.contacts": self.messages_contacts,
            "messages.chats": self.messages_chats,
            "messages.list": self.messages_list,
            "messages.send": self.messages_send,
            "messages.delete": self.messages_delete,
            "groups.list": self.groups_list,
            "groups.create": self.groups_create,
            "groups.update": self.groups_update,
            "groups.delete": self.groups_delete,
            "groups.addMembers": self.groups_add_members,
            "groups.removeMember": self.groups_remove_member,
            "groups.updateRole": self.groups_update_role,
            "groups.leave": self.groups_leave,
            "groups.messages": self.groups_messages,
            "groups.send": self.groups_send,
            "groups.deleteMessage": self.groups_delete_message,
            "rooms.join": self.rooms_join,
            "rooms.leave": self.rooms_leave,
        }

    # ---------- lifecycle ----------

    def start(self) -> int:
        '''
        Bind and serve from a background thread.
        Output: the bound port (pass port 0 to get any free one)
        '''
        self._bind()
        threading.Thread(target=self.serve_forever, daemon=True).start()
        return self.port

    def _bind(self):
        self.srv = socket.create_server((self.host, self.port))
        self.srv.settimeout(0.5)   # lets stop() end the accept loop
        self.port = self.srv.getsockname()[1]
        self.running = True

    def serve_forever(self):
        if self.srv is None:
            self._bind()
        log.info("Server listening on %s:%s", self.host, self.port)
        while self.running:
            try:
                conn, addr = self.srv.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(None)
            conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            threading.Thread(target=self.handle_client, args=(conn, addr), daemon=True).start()
        if self.srv is not None:
            self.srv.close()
            self.srv = None

    def stop(self):
        self.running = False
        for c in self.state.all_clients():
            try:
                c.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

    # ---------- connection ----------

    def send_system(self, msg: str, to: Optional[Client] = None):
        ''' Plaintext notice to one client, or to everyone when to is None '''
        frame = Frame("system", to="*", payload={"text": msg})
        for c in [to] if to else self.state.all_clients():
            try:
                c.send(frame)
            except OSError:
                pass

    def push_userlist(self):
        users = self.state.users()
        log.debug("pushing userlist: %s", users)
        for c in self.state.all_clients():
            self._emit_to(c, "getOnlineUsers", users)

    def handle_client(self, conn: socket.socket, addr):
        '''
        Serve one connection until it leaves or drops.
        Inputs:
        - conn: socket connected to the client
        - addr: client address, for the log
        '''
        username = None
        client = None
        try:
            env = recv_json(conn)
            payload = env.get("payload") or {}
            if env.get("type") != "auth" or not payload.get("username"):
                send_json(conn, _error("EXPECT_AUTH"))
                return

            name = str(payload["username"]).strip()
            client = Client(username=name, sock=conn)
            if not self.state.add_client(client):
                # the live connection keeps the name
                send_json(conn, _error("DUPLICATE_USERNAME", to=name))
                client = None
                return
            username = name

            send_json(conn, Frame("key", to=username, payload={"server_pub_pem": self.rsa_pub_pem}).to_dict())

            env = recv_json(conn)
            if env.get("type") != "key" or "wrapped" not in (env.get("payload") or {}):
                send_json(conn, _error("EXPECT_AES_KEY", to=username))
                return
            aes = rsa_unwrap_key(self.rsa_priv, env["payload"]["wrapped"])

            account = self.store.ensure_account(username, payload.get("fullName") or username)
            # welcome must be the first encrypted frame, so the key is published only after it
            client.send(Frame("welcome", to=username, payload=encrypt_body(aes, {"account": account})))
            client.aes_key = aes
            for g in self.store.groups_of(username):
                self.state.join_room(username, g["_id"])
            log.info("%s connected from %s", username, addr)

            self.send_system(f"{username} joined the chat.")
            self.push_userlist()

            while True:
                env = recv_json(conn)
                etype = env.get("type")
                if etype == "req":
                    self.handle_request(client, env)
                elif etype == "system" and (env.get("payload") or {}).get("event") == "leave":
                    break
                else:
                    client.send(Frame("error", to=username, payload={"code": "UNKNOWN_TYPE"}))

        except (ConnectionError, OSError) as e:
            log.info("connection %s closed: %s", addr, e)
        except (ValueError, KeyError, InvalidTag) as e:
            log.warning("dropping connection %s after a bad frame: %s", addr, e)
        finally:
            if username:
                handshaken = client is not None and client.aes_key is not None
                self.state.remove(username)
                if handshaken:
                    self.send_system(f"{username} left the chat.")
                    self.push_userlist()
            drop_buffer(conn)
            try:
                conn.close()
            except OSError:
                pass

    def handle_request(self, client: Client, env: Dict[str, Any]):
        ''' Run one req frame through its handler and answer with a res frame '''
        body = decrypt_body(client.aes_key, env["payload"])
        req_id = body.get("id")
        action = body.get("action")
        handler = self.handlers.get(action)
        params = body.get("params") or {}
        try:
            if handler is None:
                raise RequestError("UNKNOWN_ACTION", f"Unknown action {action!r}")
            if not isinstance(params, dict):
                raise RequestError("BAD_REQUEST", "params must be an object")
            res = {"id": req_id, "ok": True, "data": handler(client, params)}
        except RequestError as e:
            res = {"id": req_id, "ok": False, "error": {"code": e.code, "message": e.message}}
        except (KeyError, TypeError, AttributeError) as e:
            res = {"id": req_id, "ok": False, "error": {"code": "BAD_REQUEST", "message": f"Bad parameters: {e}"}}
        if not res["ok"]:
            log.info("%s %s refused: %s", client.username, action, res["error"]["message"])
        client.send_encrypted("res", res)

    # ---------- fanout ----------

    def _emit_to(self, c: Client, event: str, data: Any):
        try:
            c.send_encrypted("event", {"event": event, "data": data})
        except OSError as e:
            log.info("could not deliver %s to %s: %s", event, c.username, e)

    def emit(self, user_id: str, event: str, data: Any):
        c = self.state.get(user_id)
        if c is not None and c.aes_key is not None:
            self._emit_to(c, event, data)

    def emit_to_members(self, member_ids: Iterable[str], event: str, data: Any, exclude: Optional[str] = None):
        for uid in member_ids:
            if uid != exclude:
                self.emit(uid, event, data)

    def emit_to_room(self, group_id: str, event: str, data: Any):
        ''' Room subscribers that are still members of the group '''
        members = set(self.store.member_ids(group_id))
        for c in self.state.in_room(group_id):
            if c.username in members:
                self._emit_to(c, event, data)

    def _notice(self, group_id: str, notice: Dict[str, Any]):
        self.emit_to_room(group_id, "newGroupMessage", {"groupId": group_id, "message": notice})

    @staticmethod
    def _ids(group: Dict[str, Any]) -> List[str]:
        return [m["user"]["_id"] for m in group["members"]]

    # ---------- account ----------

    def auth_me(self, c: Client, p: Dict[str, Any]):
        return self.store.account(c.username)

    def auth_store_keys(self, c: Client, p: Dict[str, Any]):
        self.store.store_keys(c.username, p.get("publicKey"), p.get("privateKey"))
        return {"message": "Keys stored successfully"}

    def auth_public_key(self, c: Client, p: Dict[str, Any]):
        return self.store.public_key(p["userId"])

    # ---------- direct messages ----------

    def messages_contacts(self, c: Client, p: Dict[str, Any]):
        return self.store.contacts(c.username)

    def messages_chats(self, c: Client, p: Dict[str, Any]):
        return self.store.chat_partners(c.username)

    def messages_list(self, c: Client, p: Dict[str, Any]):
        return self.store.direct_messages(c.username, p["userId"])

    def messages_send(self, c: Client, p: Dict[str, Any]):
        msg = self.store.send_direct(c.username, p["userId"], p.get("message") or {})
        self.emit(msg["receiverId"], "newMessage", msg)
        return msg

    def messages_delete(self, c: Client, p: Dict[str, Any]):
        msg = self.store.delete_direct(c.username, p["messageId"])
        self.emit(msg["receiverId"], "messageDeleted", {"messageId": msg["_id"], "senderId": c.username})
        return {"message": "Message deleted successfully"}

    # ---------- groups ----------

    def groups_list(self, c: Client, p: Dict[str, Any]):
        return self.store.groups_of(c.username)

    def groups_create(self, c: Client, p: Dict[str, Any]):
        g = self.store.create_group(c.username, p.get("name"), p.get("description") or "", p.get("memberIds"))
        for uid in self._ids(g):
            self.state.join_room(uid, g["_id"])
        self.emit_to_members(self._ids(g), "groupCreated", g, exclude=c.username)
        return g

    def groups_update(self, c: Client, p: Dict[str, Any]):
        g = self.store.update_group(c.username, p["groupId"], name=p.get("name"),
                                    description=p.get("description"), group_pic=p.get("groupPic"))
        self.emit_to_members(self._ids(g), "groupUpdated", g)
        return g

    def groups_delete(self, c: Client, p: Dict[str, Any]):
        group_id = p["groupId"]
        members = self.store.delete_group(c.username, group_id)
        for uid in members:
            self.state.leave_room(uid, group_id)
        self.emit_to_members(members, "groupDeleted", {"groupId": group_id})
        return {"message": "Group deleted successfully"}

    def groups_add_members(self, c: Client, p: Dict[str, Any]):
        group_id = p["groupId"]
        g, added, notice = self.store.add_members(c.username, group_id, p.get("memberIds") or [])
        for uid in added:
            self.state.join_room(uid, group_id)
        self._notice(group_id, notice)
        self.emit_to_members(self._ids(g), "membersAdded", {"groupId": group_id, "newMembers": added, "group": g})
        return g

    def groups_remove_member(self, c: Client, p: Dict[str, Any]):
        group_id, target = p["groupId"], p["userId"]
        g, notice = self.store.remove_member(c.username, group_id, target)
        self.state.leave_room(target, group_id)
        self._notice(group_id, notice)
        self.emit(target, "removedFromGroup", {"groupId": group_id, "userId": target})
        self.emit_to_members(self._ids(g), "memberRemoved", {"groupId": group_id, "userId": target, "group": g})
        return g

    def groups_update_role(self, c: Client, p: Dict[str, Any]):
        group_id, target, role = p["groupId"], p["userId"], p.get("role")
        g, notice = self.store.update_role(c.username, group_id, target, role)
        self._notice(group_id, notice)
        self.emit_to_members(self._ids(g), "memberRoleUpdated",
                             {"groupId": group_id, "userId": target, "newRole": role, "group": g})
        return g

    def groups_leave(self, c: Client, p: Dict[str, Any]):
        group_id = p["groupId"]
        g, notice = self.store.leave_group(c.username, group_id)
        self.state.leave_room(c.username, group_id)
        self._notice(group_id, notice)
        self.emit_to_members(self._ids(g), "memberLeft", {"groupId": group_id, "userId": c.username, "group": g})
        return {"message": "Successfully left the group"}

    def groups_messages(self, c: Client, p: Dict[str, Any]):
        return self.store.group_history(c.username, p["groupId"])

    def groups_send(self, c: Client, p: Dict[str, Any]):
        group_id = p["groupId"]
        msg = self.store.send_group(c.username, group_id, p.get("message") or {})
        self.emit_to_room(group_id, "newGroupMessage", {"groupId": group_id, "message": msg})
        return msg

    def groups_delete_message(self, c: Client, p: Dict[str, Any]):
        group_id, message_id = p["groupId"], p["messageId"]
        self.store.delete_group_message(c.username, group_id, message_id)
        self.emit_to_members(self.store.member_ids(group_id), "groupMessageDeleted",
                             {"groupId": group_id, "messageId": message_id})
        return {"message": "Message deleted successfully"}

    # ---------- rooms ----------

    def rooms_join(self, c: Client, p: Dict[str, Any]):
        group_id = p["groupId"]
        if not self.store.is_member(group_id, c.username):
            raise RequestError("FORBIDDEN", "You are not a member of this group")
        self.state.join_room(c.username, group_id)
        return {"groupId": group_id}

    def rooms_leave(self, c: Client, p: Dict[str, Any]):
        self.state.leave_room(c.username, p["groupId"])
        return {"groupId": p["groupId"]}


def main():
    settings = load_settings()
    ap = argparse.ArgumentParser(description="Reference chat server (in memory)")
    ap.add_argument("--host", default=HOST, help="Address to listen on")
    ap.add_argument("--port", type=int, default=settings.port, help="Port to listen on")
    args = ap.parse_args()

    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    server = ChatServer(args.host, args.port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        server.stop()


if __name__ == "__main__":
    main()
