import logging
from typing import List, Optional

from common.errors import RequestError
from common.schema import Group
from client.events import (Event, GroupCreated, GroupDeleted, GroupUpdated,
                           MembershipChanged, NewMessage)
from client.notify import Notifier
from client.session import SessionState

log = logging.getLogger(__name__)


class GroupDirectory:
    '''
    The viewer's groups, most recently active first.
    Every management call goes to the server first; local state only changes on success.
    Failures are reported through the notifier and the call returns None.
    '''
    def __init__(self, net, session: SessionState, notifier: Notifier):
        self.net = net
        self.session = session
        self.notifier = notifier
        self.groups: List[Group] = []

    def get(self, group_id: str) -> Optional[Group]:
        for g in self.groups:
            if g.id == group_id:
                return g
        return None

    def member_ids(self, group_id: str) -> List[str]:
        ''' Membership snapshot used to fan out message keys '''
        g = self.get(group_id)
        return g.member_ids() if g else []

    def my_role(self, group_id: str) -> Optional[str]:
        g = self.get(group_id)
        if g is None or self.session.user_id is None:
            return None
        return g.role_of(self.session.user_id)

    def _replace(self, group: Group) -> None:
        self.groups = [group if g.id == group.id else g for g in self.groups]

    def _drop(self, group_id: str) -> None:
        self.groups = [g for g in self.groups if g.id != group_id]

    def _to_top(self, group_id: str) -> None:
        g = self.get(group_id)
        if g is not None:
            self.groups = [g] + [x for x in self.groups if x.id != group_id]

    async def _room(self, intent, group_id: str) -> None:
        # room membership only affects live delivery; the group list is already correct
        try:
            await intent(group_id)
        except (RequestError, ConnectionError) as e:
            log.warning("room update for %s failed: %s", group_id, e)

    async def load(self) -> List[Group]:
        try:
            self.groups = await self.net.list_groups()
        except (RequestError, ConnectionError) as e:
            self.notifier.error(f"Failed to fetch groups: {e}")
        return self.groups

    async def create(self, name: str, description: str = "", member_ids: Optional[List[str]] = None) -> Optional[Group]:
        try:
            group = await self.net.create_group(name, description, member_ids)
        except (RequestError, ConnectionError) as e:
            self.notifier.error(f"Failed to create group: {e}")
            return None
        self.groups = [group] + [g for g in self.groups if g.id != group.id]
        await self._room(self.net.join_room, group.id)
        self.notifier.success("Group created successfully!")
        return group

    async def update(self, group_id: str, **fields) -> Optional[Group]:
        try:
            group = await self.net.update_group(group_id, **fields)
        except (RequestError, ConnectionError) as e:
            self.notifier.error(f"Failed to update group: {e}")
            return None
        self._replace(group)
        self.notifier.success("Group updated successfully!")
        return group

    async def delete(self, group_id: str) -> bool:
        try:
            await self.net.delete_group(group_id)
        except (RequestError, ConnectionError) as e:
            self.notifier.error(f"Failed to delete group: {e}")
            return False
        self._drop(group_id)
        await self._room(self.net.leave_room, group_id)
        self.notifier.success("Group deleted successfully!")
        return True

    async def add_members(self, group_id: str, member_ids: List[str]) -> Optional[Group]:
        try:
            group = await self.net.add_members(group_id, member_ids)
        except (RequestError, ConnectionError) as e:
            self.notifier.error(f"Failed to add members: {e}")
            return None
        self._replace(group)
        self.notifier.success("Members added successfully!")
        return group

    async def remove_member(self, group_id: str, user_id: str) -> Optional[Group]:
        try:
            group = await self.net.remove_member(group_id, user_id)
        except (RequestError, ConnectionError) as e:
            self.notifier.error(f"Failed to remove member: {e}")
            return None
        self._replace(group)
        self.notifier.success("Member removed successfully!")
        return group

    async def update_member_role(self, group_id: str, user_id: str, role: str) -> Optional[Group]:
        try:
            group = await self.net.update_member_role(group_id, user_id, role)
        except (RequestError, ConnectionError) as e:
            self.notifier.error(f"Failed to update member role: {e}")
            return None
        self._replace(group)
        self.notifier.success("Member promoted to admin!" if role == "admin" else "Member demoted to member!")
        return group

    async def leave(self, group_id: str) -> bool:
        try:
            await self.net.leave_group(group_id)
        except (RequestError, ConnectionError) as e:
            self.notifier.error(f"Failed to leave group: {e}")
            return False
        self._drop(group_id)
        await self._room(self.net.leave_room, group_id)
        self.notifier.success("Left the group successfully!")
        return True

    async def apply(self, event: Event) -> None:
        ''' Fold a realtime group/membership event into the list '''
        me = self.session.user_id
        if isinstance(event, NewMessage) and event.group_id:
            self._to_top(event.group_id)
        elif isinstance(event, GroupCreated):
            self.groups = [event.group] + [g for g in self.groups if g.id != event.group.id]
            await self._room(self.net.join_room, event.group.id)
            self.notifier.success(f'You were added to group "{event.group.name}"')
        elif isinstance(event, GroupUpdated):
            self._replace(event.group)
        elif isinstance(event, GroupDeleted):
            if self.get(event.group_id) is not None:
                self._drop(event.group_id)
                await self._room(self.net.leave_room, event.group_id)
                self.notifier.info("A group you were in was deleted")
        elif isinstance(event, MembershipChanged):
            if event.change == "removed" and event.user_id in (None, me):
                if self.get(event.group_id) is not None:
                    self._drop(event.group_id)
                    await self._room(self.net.leave_room, event.group_id)
                    self.notifier.info("You were removed from a group")
                return
            if event.group is not None:
                if self.get(event.group_id) is None:
                    if me in event.group.member_ids():
                        # added by someone else: the group is new to this viewer
                        self.groups = [event.group] + self.groups
                        await self._room(self.net.join_room, event.group_id)
                        self.notifier.success(f'You were added to group "{event.group.name}"')
                    return
                self._replace(event.group)
            if event.change == "role_changed" and event.user_id == me:
                self.notifier.info(f"Your role was changed to {event.new_role}")
