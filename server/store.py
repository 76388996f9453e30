"""In-memory accounts, messages and groups for the reference server.

Records are kept as the JSON documents sent to clients (camelCase keys).
Every public method takes the lock; failures raise RequestError with one of
BAD_REQUEST, NOT_FOUND or FORBIDDEN.
"""
import copy
import itertools
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from common.errors import RequestError
from common.messages import iso_now

MAX_TEXT = 2000
# base64 of AES-GCM output for MAX_TEXT characters of UTF-8, with room to spare
MAX_CIPHERTEXT = 12000
MIN_GROUP_NAME = 3

# fields a client may submit with a message besides text and image
_ENVELOPE_FIELDS = ("isEncrypted", "encryptedKey", "senderEncryptedKey", "encryptedKeys",
                    "iv", "signature", "authSignature", "senderPublicKey")


def _bad(message: str) -> RequestError:
    return RequestError("BAD_REQUEST", message)


def _not_found(message: str) -> RequestError:
    return RequestError("NOT_FOUND", message)


def _forbidden(message: str) -> RequestError:
    return RequestError("FORBIDDEN", message)


class ChatStore:
    def __init__(self):
        self.lock = Lock()
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.messages: List[Dict[str, Any]] = []                   # direct messages, in arrival order
        self.groups: Dict[str, Dict[str, Any]] = {}                 # members hold bare user ids
        self.group_messages: Dict[str, List[Dict[str, Any]]] = {}
        self._ids = itertools.count(1)

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids):06d}"

    # ---------- accounts ----------

    def ensure_account(self, user_id: str, full_name: str = "") -> Dict[str, Any]:
        ''' Return the account for user_id, creating it on first login '''
        with self.lock:
            acc = self.accounts.get(user_id)
            if acc is None:
                acc = {"_id": user_id, "fullName": full_name or user_id, "profilePic": "",
                       "publicKey": None, "privateKey": None}
                self.accounts[user_id] = acc
            return dict(acc)

    def account(self, user_id: str) -> Dict[str, Any]:
        with self.lock:
            return dict(self._account(user_id))

    def _account(self, user_id: str) -> Dict[str, Any]:
        acc = self.accounts.get(user_id)
        if acc is None:
            raise _not_found("User not found")
        return acc

    def _ref(self, user_id: str) -> Dict[str, Any]:
        acc = self.accounts.get(user_id)
        if acc is None:
            return {"_id": user_id, "fullName": user_id, "profilePic": ""}
        return {"_id": acc["_id"], "fullName": acc["fullName"], "profilePic": acc["profilePic"]}

    def store_keys(self, user_id: str, public_key: Optional[str], private_key: Optional[str]) -> None:
        if not public_key:
            raise _bad("Public key is required")
        with self.lock:
            acc = self._account(user_id)
            acc["publicKey"] = public_key
            # escrow: the private key is kept so another device can recover it
            if private_key:
                acc["privateKey"] = private_key

    def public_key(self, user_id: str) -> Dict[str, Any]:
        with self.lock:
            acc = self._account(user_id)
            return {"_id": acc["_id"], "fullName": acc["fullName"], "publicKey": acc["publicKey"]}

    def contacts(self, user_id: str) -> List[Dict[str, Any]]:
        with self.lock:
            return [self._ref(uid) for uid in self.accounts if uid != user_id]

    def chat_partners(self, user_id: str) -> List[Dict[str, Any]]:
        ''' Users this account has exchanged direct messages with, most recent first '''
        with self.lock:
            seen: List[str] = []
            for m in reversed(self.messages):
                if m["senderId"] == user_id:
                    other = m["receiverId"]
                elif m["receiverId"] == user_id:
                    other = m["senderId"]
                else:
                    continue
                if other not in seen:
                    seen.append(other)
            return [self._ref(uid) for uid in seen]

    # ---------- direct messages ----------

    def _message_body(self, body: Dict[str, Any]) -> Dict[str, Any]:
        text = body.get("text")
        image = body.get("image")
        if isinstance(text, str):
            text = text.strip() if not body.get("isEncrypted") else text
        if not text and not image:
            raise _bad("Text or image is required")
        limit = MAX_CIPHERTEXT if body.get("isEncrypted") else MAX_TEXT
        if text and len(text) > limit:
            raise _bad(f"Message text is longer than {limit} characters")
        out = {"text": text or None, "image": image or None, "isEncrypted": False}
        for k in _ENVELOPE_FIELDS:
            if body.get(k) is not None:
                out[k] = body[k]
        return out

    def direct_messages(self, user_id: str, other_id: str) -> List[Dict[str, Any]]:
        with self.lock:
            self._account(other_id)
            pair = {user_id, other_id}
            return [copy.deepcopy(m) for m in self.messages
                    if {m["senderId"], m["receiverId"]} == pair]

    def send_direct(self, sender_id: str, receiver_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if sender_id == receiver_id:
            raise _bad("Cannot send messages to yourself")
        fields = self._message_body(body)
        with self.lock:
            self._account(receiver_id)
            msg = {"_id": self._new_id("m"), "senderId": sender_id, "receiverId": receiver_id,
                   "type": "message", **fields, "createdAt": iso_now()}
            self.messages.append(msg)
            return copy.deepcopy(msg)

    def delete_direct(self, user_id: str, message_id: str) -> Dict[str, Any]:
        ''' Only the sender may delete a direct message '''
        with self.lock:
            for i, m in enumerate(self.messages):
                if m["_id"] == message_id:
                    if m["senderId"] != user_id:
                        raise _forbidden("You can only delete your own messages")
                    return self.messages.pop(i)
            raise _not_found("Message not found")

    # ---------- groups ----------

    def _group(self, group_id: str) -> Dict[str, Any]:
        g = self.groups.get(group_id)
        if g is None:
            raise _not_found("Group not found")
        return g

    def _role(self, g: Dict[str, Any], user_id: str) -> Optional[str]:
        for m in g["members"]:
            if m["user"] == user_id:
                return m["role"]
        return None

    def _member_group(self, group_id: str, user_id: str) -> Dict[str, Any]:
        g = self._group(group_id)
        if self._role(g, user_id) is None:
            raise _forbidden("You are not a member of this group")
        return g

    def _manager_group(self, group_id: str, user_id: str) -> Dict[str, Any]:
        g = self._member_group(group_id, user_id)
        if self._role(g, user_id) not in ("creator", "admin"):
            raise _forbidden("Only admins can manage members")
        return g

    def _creator_group(self, group_id: str, user_id: str) -> Dict[str, Any]:
        g = self._member_group(group_id, user_id)
        if self._role(g, user_id) != "creator":
            raise _forbidden("Only the group creator can do this")
        return g

    def _populated(self, g: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(g)
        out["members"] = [{"user": self._ref(m["user"]), "role": m["role"], "joinedAt": m["joinedAt"]}
                          for m in g["members"]]
        return out

    def member_ids(self, group_id: str) -> List[str]:
        with self.lock:
            g = self.groups.get(group_id)
            return [m["user"] for m in g["members"]] if g else []

    def is_member(self, group_id: str, user_id: str) -> bool:
        with self.lock:
            g = self.groups.get(group_id)
            return g is not None and self._role(g, user_id) is not None

    def groups_of(self, user_id: str) -> List[Dict[str, Any]]:
        ''' Groups the user belongs to, most recently active first '''
        with self.lock:
            mine = [g for g in self.groups.values() if self._role(g, user_id) is not None]
            mine.sort(key=lambda g: g["updatedAt"], reverse=True)
            return [self._populated(g) for g in mine]

    def create_group(self, creator_id: str, name: str, description: str = "",
                     member_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        name = (name or "").strip()
        if len(name) < MIN_GROUP_NAME:
            raise _bad(f"Group name must be at least {MIN_GROUP_NAME} characters")
        now = iso_now()
        with self.lock:
            members = [{"user": creator_id, "role": "creator", "joinedAt": now}]
            for uid in member_ids or []:
                if uid != creator_id and uid in self.accounts and all(m["user"] != uid for m in members):
                    members.append({"user": uid, "role": "member", "joinedAt": now})
            g = {"_id": self._new_id("g"), "name": name, "description": (description or "").strip(),
                 "groupPic": "", "createdBy": creator_id, "members": members,
                 "createdAt": now, "updatedAt": now}
            self.groups[g["_id"]] = g
            self.group_messages[g["_id"]] = []
            return self._populated(g)

    def update_group(self, user_id: str, group_id: str, name: Optional[str] = None,
                     description: Optional[str] = None, group_pic: Optional[str] = None) -> Dict[str, Any]:
        with self.lock:
            g = self._creator_group(group_id, user_id)
            if name:
                if len(name.strip()) < MIN_GROUP_NAME:
                    raise _bad(f"Group name must be at least {MIN_GROUP_NAME} characters")
                g["name"] = name.strip()
            if description is not None:
                g["description"] = description.strip()
            if group_pic:
                g["groupPic"] = group_pic
            g["updatedAt"] = iso_now()
            return self._populated(g)

    def delete_group(self, user_id: str, group_id: str) -> List[str]:
        ''' Delete the group and its messages; returns the former member ids '''
        with self.lock:
            g = self._creator_group(group_id, user_id)
            del self.groups[group_id]
            self.group_messages.pop(group_id, None)
            return [m["user"] for m in g["members"]]

    def _notice(self, g: Dict[str, Any], actor_id: str, text: str, action: str) -> Dict[str, Any]:
        msg = {"_id": self._new_id("s"), "groupId": g["_id"], "senderId": self._ref(actor_id),
               "text": text, "type": "system", "systemAction": action, "isEncrypted": False,
               "createdAt": iso_now()}
        self.group_messages[g["_id"]].append(msg)
        g["updatedAt"] = msg["createdAt"]
        return copy.deepcopy(msg)

    def _name(self, user_id: str) -> str:
        acc = self.accounts.get(user_id)
        return acc["fullName"] if acc else "A member"

    def add_members(self, user_id: str, group_id: str,
                    member_ids: List[str]) -> Tuple[Dict[str, Any], List[str], Dict[str, Any]]:
        '''
        Admins and the creator add members.
        Output: (group, added ids, system notice)
        '''
        if not member_ids:
            raise _bad("Please provide member IDs to add")
        with self.lock:
            g = self._manager_group(group_id, user_id)
            existing = {m["user"] for m in g["members"]}
            added = []
            for uid in member_ids:
                if uid not in existing and uid in self.accounts and uid not in added:
                    added.append(uid)
            if not added:
                raise _bad("No new valid members to add")
            now = iso_now()
            g["members"].extend({"user": uid, "role": "member", "joinedAt": now} for uid in added)
            names = ", ".join(self._name(uid) for uid in added)
            notice = self._notice(g, user_id, f"{self._name(user_id)} added {names} to the group", "member_added")
            return self._populated(g), added, notice

    def remove_member(self, user_id: str, group_id: str,
                      target_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        ''' Admins and the creator remove members; nobody removes the creator '''
        with self.lock:
            g = self._manager_group(group_id, user_id)
            role = self._role(g, target_id)
            if role is None:
                raise _not_found("User is not a member of this group")
            if role == "creator":
                raise _forbidden("Cannot remove the group creator")
            g["members"] = [m for m in g["members"] if m["user"] != target_id]
            notice = self._notice(g, user_id, f"{self._name(user_id)} removed {self._name(target_id)} from the group",
                                  "member_removed")
            return self._populated(g), notice

    def update_role(self, user_id: str, group_id: str, target_id: str,
                    role: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        if role not in ("admin", "member"):
            raise _bad("Invalid role. Must be 'admin' or 'member'")
        with self.lock:
            g = self._creator_group(group_id, user_id)
            member = next((m for m in g["members"] if m["user"] == target_id), None)
            if member is None:
                raise _not_found("User is not a member of this group")
            if member["role"] == "creator":
                raise _forbidden("Cannot change the creator's role")
            promoted = role == "admin" and member["role"] == "member"
            member["role"] = role
            verb, to_role = ("promoted", "admin") if promoted else ("demoted", "member")
            notice = self._notice(g, user_id, f"{self._name(user_id)} {verb} {self._name(target_id)} to {to_role}",
                                  "member_promoted" if promoted else "member_demoted")
            return self._populated(g), notice

    def leave_group(self, user_id: str, group_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        with self.lock:
            g = self._member_group(group_id, user_id)
            if self._role(g, user_id) == "creator":
                raise _forbidden("The group creator cannot leave; delete the group instead")
            g["members"] = [m for m in g["members"] if m["user"] != user_id]
            notice = self._notice(g, user_id, f"{self._name(user_id)} left the group", "member_left")
            return self._populated(g), notice

    # ---------- group messages ----------

    def group_history(self, user_id: str, group_id: str) -> List[Dict[str, Any]]:
        with self.lock:
            self._member_group(group_id, user_id)
            return copy.deepcopy(self.group_messages.get(group_id, []))

    def send_group(self, user_id: str, group_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        fields = self._message_body(body)
        with self.lock:
            g = self._member_group(group_id, user_id)
            msg = {"_id": self._new_id("m"), "groupId": group_id, "senderId": self._ref(user_id),
                   "type": "message", **fields, "createdAt": iso_now()}
            self.group_messages[group_id].append(msg)
            g["updatedAt"] = msg["createdAt"]
            return copy.deepcopy(msg)

    def delete_group_message(self, user_id: str, group_id: str, message_id: str) -> None:
        ''' Members delete their own messages; admins and the creator delete any '''
        with self.lock:
            g = self._member_group(group_id, user_id)
            msgs = self.group_messages.get(group_id, [])
            for i, m in enumerate(msgs):
                if m["_id"] == message_id:
                    own = m["senderId"]["_id"] == user_id
                    if not own and self._role(g, user_id) not in ("creator", "admin"):
                        raise _forbidden("You can only delete your own messages")
                    del msgs[i]
                    return
            raise _not_found("Message not found")
