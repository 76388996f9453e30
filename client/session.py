import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Optional, Set

from common.errors import ChatError
from common.schema import Account

log = logging.getLogger(__name__)

KeyFetcher = Callable[[str], Awaitable[Optional[str]]]

DIRECT = "direct"
GROUP = "group"


@dataclass(frozen=True)
class Conversation:
    kind: str   # DIRECT (ref is the peer's user id) or GROUP (ref is the group id)
    ref: str

    @property
    def is_group(self) -> bool:
        return self.kind == GROUP

    @classmethod
    def direct(cls, user_id: str) -> "Conversation":
        return cls(DIRECT, user_id)

    @classmethod
    def group(cls, group_id: str) -> "Conversation":
        return cls(GROUP, group_id)


class PublicKeyCache:
    '''
    Identity -> public key PEM, kept for one session.
    Only keys that exist are cached, so a user who sets up keys later is found on the next lookup.
    Two lookups racing for the same identity may both fetch; the result is the same either way.
    '''
    def __init__(self, fetch: KeyFetcher):
        self._fetch = fetch
        self._keys: Dict[str, str] = {}

    async def get(self, identity: str) -> Optional[str]:
        if identity in self._keys:
            return self._keys[identity]
        try:
            key = await self._fetch(identity)
        except (ChatError, ConnectionError, OSError) as e:
            log.error("Error fetching public key for %s: %s", identity, e)
            return None
        if key:
            self._keys[identity] = key
        return key

    def prime(self, identity: str, key: Optional[str]) -> None:
        if key:
            self._keys[identity] = key

    def clear(self) -> None:
        self._keys.clear()

    def __contains__(self, identity: str) -> bool:
        return identity in self._keys

    def __len__(self) -> int:
        return len(self._keys)


class Presence:
    ''' Online user ids as last announced by the server '''
    def __init__(self):
        self._online: Set[str] = set()

    def replace(self, user_ids: Iterable[str]) -> None:
        self._online = set(user_ids)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def users(self) -> Set[str]:
        return set(self._online)

    def clear(self) -> None:
        self._online = set()


class SessionState:
    '''
    Per-session client state: who is logged in, the public key cache and presence.
    Created at login and ended at logout; nothing here outlives the session.
    '''
    def __init__(self, fetch_public_key: KeyFetcher, sound_enabled: bool = False):
        self.account: Optional[Account] = None
        self.keys = PublicKeyCache(fetch_public_key)
        self.presence = Presence()
        self.sound_enabled = sound_enabled

    @property
    def user_id(self) -> Optional[str]:
        return self.account.id if self.account else None

    @property
    def public_key(self) -> Optional[str]:
        return self.account.public_key if self.account else None

    def start(self, account: Account) -> None:
        self.account = account
        self.keys.prime(account.id, account.public_key)

    def set_public_key(self, public_key: str) -> None:
        if self.account is not None:
            self.account = self.account.model_copy(update={"public_key": public_key})
            self.keys.prime(self.account.id, public_key)

    def toggle_sound(self) -> bool:
        self.sound_enabled = not self.sound_enabled
        return self.sound_enabled

    def end(self) -> None:
        self.account = None
        self.keys.clear()
        self.presence.clear()
