"""Delivery of messages for the open conversation.

Outbound messages go COMPOSING -> OPTIMISTIC -> CONFIRMED or ROLLED_BACK: a
placeholder is shown before the network call, then swapped for the stored
record or removed. Inbound realtime events for the open conversation are
decrypted and appended in arrival order. No cipher failure escapes this
module; it becomes a flag on the DisplayMessage instead.
"""
import asyncio
import enum
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from common import crypto
from common.errors import (DecryptionError, EncryptionError, NoKeyForViewer,
                           RequestError, SignatureMismatch)
from common.messages import iso_now
from common.schema import Envelope, StoredMessage
from client.direct import decrypt_for_direct, encrypt_for_direct, verify
from client.events import Event, MessageDeleted, NewMessage
from client.group import decrypt_for_group, encrypt_for_group
from client.groups import GroupDirectory
from client.keystore import KeyStore
from client.notify import Notifier
from client.session import Conversation, SessionState

log = logging.getLogger(__name__)

PLACEHOLDER_ENCRYPTED = "[Encrypted message]"
PLACEHOLDER_FAILED = "[Unable to decrypt message]"
PLACEHOLDER_NO_KEY = "[Encrypted - no key for you]"

_NETWORK_ERRORS = (RequestError, ConnectionError, ValueError)


class DeliveryState(enum.Enum):
    COMPOSING = "composing"
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    RECEIVED = "received"      # loaded from history or pushed by the server


@dataclass
class DisplayMessage:
    message: StoredMessage
    text: Optional[str]
    state: DeliveryState = DeliveryState.RECEIVED
    decrypted: bool = False
    signature_valid: Optional[bool] = None
    decryption_failed: bool = False
    no_key: bool = False

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def is_optimistic(self) -> bool:
        return self.state is DeliveryState.OPTIMISTIC

    @property
    def sender_id(self) -> Optional[str]:
        return self.message.sender_id

    @property
    def is_encrypted(self) -> bool:
        return self.message.is_encrypted

    @property
    def is_system(self) -> bool:
        return self.message.is_system


class ConversationSubscription:
    ''' Realtime delivery for one open conversation; closed when the conversation is left '''
    def __init__(self, coordinator: "DeliveryCoordinator", conversation: Conversation):
        self.coordinator = coordinator
        self.conversation = conversation
        self.active = True

    async def dispatch(self, event: Event) -> None:
        if self.active:
            await self.coordinator._dispatch(self, event)

    def close(self) -> None:
        self.active = False


class DeliveryCoordinator:
    def __init__(self, net, session: SessionState, keystore: KeyStore,
                 groups: GroupDirectory, notifier: Notifier):
        self.net = net
        self.session = session
        self.keystore = keystore
        self.groups = groups
        self.notifier = notifier
        self.timeline: List[DisplayMessage] = []
        self.conversation: Optional[Conversation] = None
        self.subscription: Optional[ConversationSubscription] = None
        self._temp_ids = itertools.count()

    # ---------- conversation lifetime ----------

    async def open_conversation(self, conversation: Conversation) -> ConversationSubscription:
        self.close_conversation()
        self.conversation = conversation
        self.subscription = ConversationSubscription(self, conversation)
        await self.load()
        return self.subscription

    def close_conversation(self) -> None:
        if self.subscription is not None:
            self.subscription.close()
        self.subscription = None
        self.conversation = None
        self.timeline = []

    async def load(self) -> bool:
        '''
        Fetch and decrypt the open conversation's history.
        On failure the current timeline is left as it is. Messages that arrive
        in realtime while the history is in flight are kept after it.
        '''
        conv = self.conversation
        if conv is None:
            return False
        before = {d.id for d in self.timeline}
        try:
            stored = await self.net.fetch_messages(conv)
        except _NETWORK_ERRORS as e:
            self.notifier.error(f"Failed to fetch messages: {e}")
            return False
        display = await asyncio.gather(*(self.decrypt(m, conv) for m in stored))
        if self.conversation != conv:
            log.debug("discarding history of %s, conversation changed", conv)
            return False
        fetched = {d.id for d in display}
        arrived = [d for d in self.timeline if d.id not in before and d.id not in fetched]
        self.timeline = list(display) + arrived
        return True

    def toggle_sound(self) -> bool:
        on = self.session.toggle_sound()
        self.keystore.save_preference("sound", on)
        return on

    # ---------- decryption ----------

    async def decrypt(self, message: StoredMessage, conversation: Conversation) -> DisplayMessage:
        ''' Build the display record for a stored message; never raises for cipher failures '''
        envelope = message.envelope()
        if envelope is None:
            return DisplayMessage(message, message.text)

        private_key = self.keystore.private_key_object()
        if private_key is None:
            return DisplayMessage(message, PLACEHOLDER_ENCRYPTED, decryption_failed=True)

        me = self.session.user_id
        try:
            if conversation.is_group:
                text = await decrypt_for_group(envelope, me, private_key)
                valid: Optional[bool] = True
            else:
                text = await decrypt_for_direct(envelope, private_key, viewer_is_sender=message.sender_id == me)
                valid = verify(text, envelope.signature) if envelope.signature else None
        except NoKeyForViewer:
            if conversation.is_group:
                return DisplayMessage(message, PLACEHOLDER_NO_KEY, decryption_failed=True, no_key=True)
            return DisplayMessage(message, PLACEHOLDER_ENCRYPTED, decryption_failed=True)
        except SignatureMismatch as e:
            text, valid = e.plaintext, False
        except DecryptionError as e:
            log.warning("Error decrypting message %s: %s", message.id, e)
            return DisplayMessage(message, PLACEHOLDER_FAILED, decryption_failed=True)

        if valid is not False and envelope.auth_signature:
            valid = await self._check_author(message, text, envelope, valid)
        if valid is False:
            log.warning("message %s may have been tampered with", message.id)
        return DisplayMessage(message, text, decrypted=True, signature_valid=valid)

    async def _check_author(self, message: StoredMessage, text: str,
                            envelope: Envelope, valid: Optional[bool]) -> Optional[bool]:
        # without the sender's published key only the digest can be checked
        if message.sender_id is None:
            return valid
        sender_key = await self.session.keys.get(message.sender_id)
        if not sender_key:
            return valid
        return crypto.verify_digest(sender_key, text, envelope.auth_signature)

    # ---------- sending ----------

    async def send(self, text: str, image: Optional[str] = None) -> Optional[DisplayMessage]:
        '''
        Show the message at once, then persist it.
        Returns the confirmed record, or None if nothing was sent.
        '''
        conv = self.conversation
        if conv is None or self.session.account is None:
            self.notifier.error("No conversation selected")
            return None
        if not text and not image:
            return None

        account = self.session.account
        temp_id = f"temp-{int(time.time() * 1000)}-{next(self._temp_ids)}"
        placeholder = StoredMessage(
            id=temp_id,
            sender=account.ref(),
            receiver_id=None if conv.is_group else conv.ref,
            group_id=conv.ref if conv.is_group else None,
            text=text,
            image=image,
            created_at=iso_now(),
        )
        optimistic = DisplayMessage(placeholder, text, state=DeliveryState.OPTIMISTIC)
        self.timeline.append(optimistic)

        payload = await self._compose_payload(conv, text, image)
        try:
            stored = await self.net.submit_message(conv, payload)
        except _NETWORK_ERRORS as e:
            optimistic.state = DeliveryState.ROLLED_BACK
            self._remove(temp_id)
            self.notifier.error(getattr(e, "message", None) or str(e) or "Something went wrong")
            return None

        # the sender already knows the text, there is nothing to decrypt or verify
        confirmed = DisplayMessage(stored, text or stored.text, state=DeliveryState.CONFIRMED,
                                   decrypted=True, signature_valid=True)
        self._confirm(temp_id, confirmed)
        return confirmed

    async def _compose_payload(self, conv: Conversation, text: str, image: Optional[str]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "text": text,
            "image": image,
            "isEncrypted": False,
            "senderPublicKey": self.session.public_key,
        }
        # images are never encrypted
        if text:
            envelope = await self._encrypt(conv, text)
            if envelope is not None:
                payload.update(envelope.wire_fields())
        return {k: v for k, v in payload.items() if v is not None}

    async def _encrypt(self, conv: Conversation, text: str) -> Optional[Envelope]:
        private_key = self.keystore.private_key_object()
        sender_public_key = self.session.public_key
        try:
            if conv.is_group:
                if private_key is None or not sender_public_key:
                    log.info("Encryption skipped - no local keys")
                    return None
                envelope = await encrypt_for_group(text, self.groups.member_ids(conv.ref), private_key,
                                                   sender_public_key, self.session.keys,
                                                   sender_id=self.session.user_id)
                if not envelope.is_encrypted:
                    log.info("Encryption skipped - no member has a public key")
                    return None
                return envelope

            recipient_public_key = await self.session.keys.get(conv.ref)
            if not (recipient_public_key and private_key is not None and sender_public_key):
                log.info("Encryption skipped - missing keys: recipient=%s private=%s public=%s",
                         bool(recipient_public_key), private_key is not None, bool(sender_public_key))
                return None
            return await encrypt_for_direct(text, recipient_public_key, private_key, sender_public_key)
        except EncryptionError as e:
            log.warning("Encryption failed, sending unencrypted: %s", e)
            return None

    def _index(self, message_id: str) -> int:
        for i, d in enumerate(self.timeline):
            if d.id == message_id:
                return i
        return -1

    def _remove(self, message_id: str) -> None:
        self.timeline = [d for d in self.timeline if d.id != message_id]

    def _confirm(self, temp_id: str, confirmed: DisplayMessage) -> None:
        i = self._index(temp_id)
        if i == -1:
            # conversation was switched while sending
            return
        if self._index(confirmed.id) != -1:
            self._remove(temp_id)
            return
        self.timeline[i] = confirmed

    # ---------- deletion ----------

    async def delete(self, message_id: str) -> bool:
        conv = self.conversation
        if conv is None:
            return False
        try:
            await self.net.delete_message(conv, message_id)
        except _NETWORK_ERRORS as e:
            self.notifier.error(f"Failed to delete message: {getattr(e, 'message', e)}")
            return False
        self._remove(message_id)
        self.notifier.success("Message deleted")
        return True

    # ---------- realtime ----------

    async def _dispatch(self, subscription: ConversationSubscription, event: Event) -> None:
        conv = subscription.conversation
        if isinstance(event, NewMessage):
            await self._on_new_message(subscription, conv, event)
        elif isinstance(event, MessageDeleted):
            if self._concerns(conv, event.group_id, event.sender_id):
                self._remove(event.message_id)

    def _concerns(self, conv: Conversation, group_id: Optional[str], sender_id: Optional[str]) -> bool:
        if conv.is_group:
            return group_id == conv.ref
        return group_id is None and sender_id == conv.ref

    async def _on_new_message(self, subscription: ConversationSubscription,
                              conv: Conversation, event: NewMessage) -> None:
        m = event.message
        if conv.is_group:
            if event.group_id != conv.ref:
                return
            # own messages are already shown through the optimistic copy
            if not m.is_system and m.sender_id == self.session.user_id:
                return
        else:
            if not self._concerns(conv, event.group_id, m.sender_id):
                return
            if m.receiver_id is not None and m.receiver_id != self.session.user_id:
                return

        display = await self.decrypt(m, conv)
        if not subscription.active or self.conversation != conv:
            log.debug("discarding message %s, conversation changed", m.id)
            return
        if self._index(m.id) != -1:
            return
        self.timeline.append(display)

        if self.session.sound_enabled and not m.is_system:
            self.notifier.chime()
