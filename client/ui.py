import asyncio
import datetime
import shlex
from typing import List, Optional

import emoji

from client.app import ChatClient
from client.coordinator import DisplayMessage
from client.events import Event
from client.notify import Notifier
from client.session import Conversation

HELP = """Commands:
  /dm <user>                 open a direct conversation
  /group <group-id|name>     open a group conversation
  /groups                    list your groups
  /contacts                  everyone with an account
  /chats                     people you have direct messages with
  /create <name> [user...]   create a group
  /add <user...>             add members to the open group
  /rename <name>             rename the open group (creator only)
  /kick <user>               remove a member from the open group
  /role <user> <admin|member>
  /leave                     leave the open group
  /delgroup                  delete the open group (creator only)
  /del <message-id>          delete a message
  /history                   show the open conversation again
  /who                       online users
  /sound                     toggle the new-message chime
  /quit
Anything else is sent to the open conversation (:shortcodes: become emoji)."""


def _hhmm(ts: Optional[str]) -> str:
    '''Takes an ISO timestamp and returns a HH:MM:SS string in local time'''
    if not ts:
        return "--:--:--"
    try:
        s = ts
        if s.endswith("Z"):
            s = s.replace("Z", "+00:00")
        dt = datetime.datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=datetime.timezone.utc)
        return dt.astimezone().strftime("%H:%M:%S")
    except ValueError:
        return ts[11:19]


def render(d: DisplayMessage) -> str:
    ''' One timeline line with the encryption and signature indicators '''
    m = d.message
    if d.is_system:
        return f"(System) ({_hhmm(m.created_at)}) {d.text}"
    sender = (m.sender.full_name or m.sender.id) if m.sender else "?"
    marks = []
    if d.is_encrypted:
        marks.append("[e2e]" if d.decrypted else "[encrypted]")
    if d.signature_valid is True:
        marks.append("[verified]")
    elif d.signature_valid is False:
        marks.append("[may be tampered]")
    if d.decryption_failed:
        marks.append("[decryption failed]")
    if d.is_optimistic:
        marks.append("(sending...)")
    body = d.text or ""
    if m.image:
        body = f"{body} <image {m.image}>".strip()
    tail = (" " + " ".join(marks)) if marks else ""
    return f"({_hhmm(m.created_at)}) [{d.id[-6:]}] {sender}: {body}{tail}"


class ConsoleNotifier(Notifier):
    def success(self, text: str) -> None:
        print(f"(System) {text}")

    def info(self, text: str) -> None:
        print(f"(System) {text}")

    def error(self, text: str) -> None:
        print(f"(Error) {text}")

    def chime(self) -> None:
        print("\a", end="", flush=True)


class ConsoleUI:
    ''' Line-based chat UI: reads commands from stdin, prints the open conversation '''
    def __init__(self, client: ChatClient):
        self.client = client
        self.running = True

    @property
    def timeline(self) -> List[DisplayMessage]:
        return self.client.coordinator.timeline

    async def on_event(self, event: Event) -> None:
        # print whatever the event added to the open conversation
        before = {d.id for d in self.timeline}
        await self.client.handle_event(event)
        for d in self.timeline:
            if d.id not in before:
                print(render(d))

    def show_history(self) -> None:
        conv = self.client.coordinator.conversation
        if conv is None:
            print("(System) No conversation open. Use /dm or /group.")
            return
        title = self._group_name(conv.ref) if conv.is_group else conv.ref
        print(f"--- {title} ---")
        for d in self.timeline:
            print(render(d))

    def _group_name(self, group_id: str) -> str:
        g = self.client.groups.get(group_id)
        return g.name if g else group_id

    def _find_group(self, key: str) -> Optional[str]:
        for g in self.client.groups.groups:
            if g.id == key or g.name == key:
                return g.id
        return None

    def _open_group_id(self) -> Optional[str]:
        conv = self.client.coordinator.conversation
        if conv is None or not conv.is_group:
            print("(System) Open a group first (/group).")
            return None
        return conv.ref

    def _message_id(self, suffix: str) -> Optional[str]:
        for d in self.timeline:
            if d.id == suffix or d.id.endswith(suffix):
                return d.id
        print(f"(System) No message {suffix} in this conversation.")
        return None

    async def run(self) -> None:
        self.client.net.on_event = self.on_event
        print(HELP)
        while self.running:
            raw = (await asyncio.to_thread(input, "> ")).strip()
            if raw:
                await self.send_text(raw)

    async def send_text(self, raw: str) -> None:
        c = self.client
        if not raw.startswith("/"):
            if c.coordinator.conversation is None:
                print("(System) No conversation open. Use /dm or /group.")
                return
            msg = emoji.emojize(raw, language="alias")
            sent = await c.coordinator.send(msg)
            if sent is not None:
                print(render(sent))
            return

        try:
            cmd, *args = shlex.split(raw)
        except ValueError:
            print("(System) Unbalanced quotes.")
            return

        if cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP)
        elif cmd == "/dm" and len(args) == 1:
            if args[0] == c.session.user_id:
                print("(System) You cannot private-message yourself.")
                return
            await c.coordinator.open_conversation(Conversation.direct(args[0]))
            self.show_history()
        elif cmd == "/group" and len(args) == 1:
            group_id = self._find_group(args[0])
            if group_id is None:
                print(f"(System) No group {args[0]}.")
                return
            await c.coordinator.open_conversation(Conversation.group(group_id))
            self.show_history()
        elif cmd == "/groups":
            for g in c.groups.groups:
                print(f"  {g.id}  {g.name}  ({len(g.members)} members, you are {c.groups.my_role(g.id)})")
        elif cmd in ("/contacts", "/chats"):
            users = await (c.contacts() if cmd == "/contacts" else c.chats())
            online = c.session.presence.users()
            for u in users:
                print(f"  {u.id}  {u.full_name or u.id}" + ("  (online)" if u.id in online else ""))
            if not users:
                print("(System) Nobody yet.")
        elif cmd == "/create" and args:
            await c.groups.create(args[0], member_ids=args[1:])
        elif cmd == "/add" and args:
            group_id = self._open_group_id()
            if group_id:
                await c.groups.add_members(group_id, args)
        elif cmd == "/rename" and args:
            group_id = self._open_group_id()
            if group_id:
                await c.groups.update(group_id, name=" ".join(args))
        elif cmd == "/kick" and len(args) == 1:
            group_id = self._open_group_id()
            if group_id:
                await c.groups.remove_member(group_id, args[0])
        elif cmd == "/role" and len(args) == 2 and args[1] in ("admin", "member"):
            group_id = self._open_group_id()
            if group_id:
                await c.groups.update_member_role(group_id, args[0], args[1])
        elif cmd == "/leave":
            group_id = self._open_group_id()
            if group_id:
                await c.leave_group(group_id)
        elif cmd == "/delgroup":
            group_id = self._open_group_id()
            if group_id:
                await c.delete_group(group_id)
        elif cmd == "/del" and len(args) == 1:
            message_id = self._message_id(args[0])
            if message_id:
                await c.coordinator.delete(message_id)
        elif cmd == "/history":
            self.show_history()
        elif cmd == "/who":
            print("(System) Online: " + ", ".join(sorted(c.session.presence.users())))
        elif cmd == "/sound":
            on = c.coordinator.toggle_sound()
            print(f"(System) Sound {'on' if on else 'off'}.")
        else:
            print("(System) Unknown command. /help lists them.")
