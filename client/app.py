import logging
from typing import List, Optional

from common.config import Settings
from common.errors import RequestError
from common.schema import Account, UserRef
from client.account import AccountManager
from client.coordinator import DeliveryCoordinator
from client.events import (Event, GroupCreated, GroupDeleted, GroupUpdated,
                           MembershipChanged, NewMessage, OnlineUsers)
from client.groups import GroupDirectory
from client.keystore import KeyStore
from client.net import NetClient
from client.notify import Notifier
from client.session import SessionState

log = logging.getLogger(__name__)


class ChatClient:
    ''' One logged-in client: connection, keys, groups and the open conversation '''
    def __init__(self, settings: Settings, username: str, full_name: str = "",
                 notifier: Optional[Notifier] = None):
        self.settings = settings
        self.notifier = notifier or Notifier()
        self.net = NetClient(settings.host, settings.port, username, full_name,
                             timeout=settings.request_timeout)
        self.session = SessionState(self.net.fetch_public_key, sound_enabled=settings.sound_enabled)
        self.keystore = KeyStore(settings.keystore_dir, username)
        self.accounts = AccountManager(self.net, self.keystore, self.session)
        self.groups = GroupDirectory(self.net, self.session, self.notifier)
        self.coordinator = DeliveryCoordinator(self.net, self.session, self.keystore,
                                               self.groups, self.notifier)
        self.net.on_disconnect = self._on_disconnect

    @property
    def account(self) -> Optional[Account]:
        return self.session.account

    async def start(self) -> Account:
        '''
        Connect, make sure this device has the account keys, load groups and
        start consuming realtime events.
        '''
        account = await self.net.connect()
        await self.accounts.restore_session(account)
        self.session.sound_enabled = self.keystore.preference("sound", self.settings.sound_enabled)
        await self.groups.load()
        self.net.on_event = self.handle_event
        return self.session.account

    async def stop(self) -> None:
        self.coordinator.close_conversation()
        self.net.on_event = None
        await self.net.close()
        self.accounts.logout()

    def _on_disconnect(self) -> None:
        self.notifier.error("Disconnected from server")

    async def contacts(self) -> List[UserRef]:
        ''' Everyone else with an account; empty when the call fails '''
        try:
            return await self.net.contacts()
        except (RequestError, ConnectionError) as e:
            self.notifier.error(f"Failed to fetch contacts: {e}")
            return []

    async def chats(self) -> List[UserRef]:
        ''' Users with direct message history, most recent first '''
        try:
            return await self.net.chats()
        except (RequestError, ConnectionError) as e:
            self.notifier.error(f"Failed to fetch chats: {e}")
            return []

    async def leave_group(self, group_id: str) -> bool:
        ok = await self.groups.leave(group_id)
        if ok:
            self._close_if_open(group_id)
        return ok

    async def delete_group(self, group_id: str) -> bool:
        ok = await self.groups.delete(group_id)
        if ok:
            self._close_if_open(group_id)
        return ok

    def _close_if_open(self, group_id: str) -> None:
        conv = self.coordinator.conversation
        if conv is not None and conv.is_group and conv.ref == group_id:
            self.coordinator.close_conversation()

    async def handle_event(self, event: Event) -> None:
        if isinstance(event, OnlineUsers):
            self.session.presence.replace(event.user_ids)
            return

        if isinstance(event, (NewMessage, GroupCreated, GroupUpdated, GroupDeleted, MembershipChanged)):
            await self.groups.apply(event)

        open_group = self.coordinator.conversation
        if open_group is not None and open_group.is_group and self._drops_group(event, open_group.ref):
            self.coordinator.close_conversation()
            return

        if self.coordinator.subscription is not None:
            await self.coordinator.subscription.dispatch(event)

    def _drops_group(self, event: Event, group_id: str) -> bool:
        if isinstance(event, GroupDeleted):
            return event.group_id == group_id
        if isinstance(event, MembershipChanged) and event.group_id == group_id:
            return event.change == "removed" and event.user_id in (None, self.session.user_id)
        return False
