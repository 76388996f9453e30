"""Realtime events pushed by the server, parsed into a closed set of variants."""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from common.schema import Group, StoredMessage


@dataclass
class NewMessage:
    message: StoredMessage
    group_id: Optional[str] = None


@dataclass
class MessageDeleted:
    message_id: str
    sender_id: Optional[str] = None
    group_id: Optional[str] = None


@dataclass
class MembershipChanged:
    group_id: str
    change: str                    # "added" | "removed" | "role_changed" | "left"
    user_id: Optional[str] = None
    new_role: Optional[str] = None
    group: Optional[Group] = None


@dataclass
class GroupCreated:
    group: Group


@dataclass
class GroupUpdated:
    group: Group


@dataclass
class GroupDeleted:
    group_id: str


@dataclass
class OnlineUsers:
    user_ids: List[str]


Event = Union[NewMessage, MessageDeleted, MembershipChanged, GroupCreated,
              GroupUpdated, GroupDeleted, OnlineUsers]


def _group(data: Dict[str, Any]) -> Optional[Group]:
    g = data.get("group")
    return Group.model_validate(g) if g else None


def parse_event(name: str, data: Any) -> Event:
    '''
    Turn one wire event (name + data) into its variant.
    Raises ValueError for names this client does not know.
    '''
    if name == "newMessage":
        return NewMessage(StoredMessage.model_validate(data))
    if name == "newGroupMessage":
        return NewMessage(StoredMessage.model_validate(data["message"]), group_id=data["groupId"])
    if name == "messageDeleted":
        return MessageDeleted(data["messageId"], sender_id=data.get("senderId"))
    if name == "groupMessageDeleted":
        return MessageDeleted(data["messageId"], group_id=data["groupId"])
    if name == "membersAdded":
        return MembershipChanged(data["groupId"], "added", group=_group(data))
    if name == "memberRemoved":
        return MembershipChanged(data["groupId"], "removed", user_id=data.get("userId"), group=_group(data))
    if name == "removedFromGroup":
        # sent only to the member who was removed
        return MembershipChanged(data["groupId"], "removed", user_id=data.get("userId"))
    if name == "memberLeft":
        return MembershipChanged(data["groupId"], "left", user_id=data.get("userId"), group=_group(data))
    if name == "memberRoleUpdated":
        return MembershipChanged(data["groupId"], "role_changed", user_id=data.get("userId"),
                                 new_role=data.get("newRole"), group=_group(data))
    if name == "groupCreated":
        return GroupCreated(Group.model_validate(data))
    if name == "groupUpdated":
        return GroupUpdated(Group.model_validate(data))
    if name == "groupDeleted":
        return GroupDeleted(data["groupId"])
    if name == "getOnlineUsers":
        return OnlineUsers(list(data))
    raise ValueError(f"unknown event: {name}")
