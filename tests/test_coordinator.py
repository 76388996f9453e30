from common import crypto
from common.errors import RequestError
from common.schema import StoredMessage
from client.coordinator import (PLACEHOLDER_ENCRYPTED, PLACEHOLDER_FAILED, PLACEHOLDER_NO_KEY,
                                DeliveryState)
from client.events import MessageDeleted, NewMessage
from client.session import Conversation
from fakes import make_client, make_group
from helpers import run

DM_BOB = Conversation.direct("bob")
DM_ALICE = Conversation.direct("alice")


def _all_keys(*parties):
    return {p.name: p.public_pem for p in parties}


def _send(coord, conv, text):
    async def go():
        await coord.open_conversation(conv)
        return await coord.send(text)
    return run(go())


class TestSend:
    def test_optimistic_then_confirmed(self, tmp_path, alice, bob):
        coord = make_client(tmp_path, alice, _all_keys(alice, bob))
        seen = []
        coord.net.on_submit = lambda: seen.extend((d.id, d.state, d.text) for d in coord.timeline)

        sent = _send(coord, DM_BOB, "hello bob")

        assert len(seen) == 1
        temp_id, state, text = seen[0]
        assert temp_id.startswith("temp-")
        assert state is DeliveryState.OPTIMISTIC
        assert text == "hello bob"

        assert [d.id for d in coord.timeline] == [sent.id]
        assert sent.state is DeliveryState.CONFIRMED
        assert sent.text == "hello bob"
        assert sent.decrypted and sent.signature_valid is True

    def test_submitted_payload_is_encrypted(self, tmp_path, alice, bob):
        coord = make_client(tmp_path, alice, _all_keys(alice, bob))
        _send(coord, DM_BOB, "hello bob")
        payload = coord.net.submitted[0]
        assert payload["isEncrypted"] is True
        assert payload["text"] != "hello bob"
        assert payload["encryptedKey"] and payload["senderEncryptedKey"] and payload["iv"]
        assert payload["signature"] == crypto.hash_text("hello bob")
        assert payload["senderPublicKey"] == alice.public_pem

    def test_failure_rolls_back(self, tmp_path, alice, bob):
        coord = make_client(tmp_path, alice, _all_keys(alice, bob))
        coord.net.fail = RequestError("BAD_REQUEST", "Text or image is required")
        assert _send(coord, DM_BOB, "hello") is None
        assert coord.timeline == []
        assert coord.notifier.errors == ["Text or image is required"]

    def test_offline_failure_rolls_back(self, tmp_path, alice, bob):
        coord = make_client(tmp_path, alice, _all_keys(alice, bob))
        coord.net.fail = ConnectionError("not connected")
        assert _send(coord, DM_BOB, "hello") is None
        assert coord.timeline == []
        assert coord.notifier.errors

    def test_recipient_without_key_gets_plaintext(self, tmp_path, alice):
        coord = make_client(tmp_path, alice, {"alice": alice.public_pem, "bob": None})
        sent = _send(coord, DM_BOB, "hello")
        payload = coord.net.submitted[0]
        assert payload["isEncrypted"] is False
        assert payload["text"] == "hello"
        assert "encryptedKey" not in payload
        assert sent.text == "hello"

    def test_without_local_key_sends_plaintext(self, tmp_path, alice, bob):
        coord = make_client(tmp_path, alice, _all_keys(alice, bob), with_key=False)
        _send(coord, DM_BOB, "hello")
        assert coord.net.submitted[0]["isEncrypted"] is False

    def test_nothing_to_send(self, tmp_path, alice, bob):
        coord = make_client(tmp_path, alice, _all_keys(alice, bob))
        assert _send(coord, DM_BOB, "") is None
        assert coord.net.submitted == []

    def test_no_open_conversation(self, tmp_path, alice):
        coord = make_client(tmp_path, alice, {})
        assert run(coord.send("hi")) is None
        assert coord.notifier.errors == ["No conversation selected"]

    def test_image_travels_unencrypted(self, tmp_path, alice, bob):
        coord = make_client(tmp_path, alice, _all_keys(alice, bob))

        async def go():
            await coord.open_conversation(DM_BOB)
            return await coord.send("", image="https://img/1.png")

        run(go())
        payload = coord.net.submitted[0]
        assert payload["image"] == "https://img/1.png"
        assert payload["isEncrypted"] is False


class TestDirectScenario:
    def _exchange(self, tmp_path, alice, bob, text):
        sender = make_client(tmp_path, alice, _all_keys(alice, bob))
        stored = run(self._send_and_fetch(sender, text))
        reader = make_client(tmp_path, bob, _all_keys(alice, bob))
        return sender, reader, stored

    async def _send_and_fetch(self, coord, text):
        await coord.open_conversation(DM_BOB)
        sent = await coord.send(text)
        return sent.message

    def test_recipient_reads_history(self, tmp_path, alice, bob):
        _, reader, stored = self._exchange(tmp_path, alice, bob, "hi bob")
        reader.net.history[DM_ALICE] = [stored]
        run(reader.open_conversation(DM_ALICE))
        [d] = reader.timeline
        assert d.text == "hi bob"
        assert d.decrypted and d.signature_valid is True
        assert d.state is DeliveryState.RECEIVED

    def test_sender_reads_history(self, tmp_path, alice, bob):
        sender, _, stored = self._exchange(tmp_path, alice, bob, "hi bob")
        sender.net.history[DM_BOB] = [stored]
        run(sender.load())
        assert [d.text for d in sender.timeline] == ["hi bob"]

    def test_changed_digest_is_flagged(self, tmp_path, alice, bob):
        _, reader, stored = self._exchange(tmp_path, alice, bob, "pay 10")
        forged = stored.model_copy(update={"signature": crypto.hash_text("pay 1000")})
        reader.net.history[DM_ALICE] = [forged]
        run(reader.open_conversation(DM_ALICE))
        [d] = reader.timeline
        assert d.text == "pay 10"
        assert d.signature_valid is False

    def test_forged_author_signature_is_flagged(self, tmp_path, alice, bob, carol):
        _, reader, stored = self._exchange(tmp_path, alice, bob, "it's me")
        forged = stored.model_copy(update={"auth_signature": crypto.sign_digest(carol.private, "it's me")})
        reader.net.history[DM_ALICE] = [forged]
        run(reader.open_conversation(DM_ALICE))
        assert reader.timeline[0].signature_valid is False

    def test_corrupted_ciphertext(self, tmp_path, alice, bob):
        _, reader, stored = self._exchange(tmp_path, alice, bob, "hello")
        raw = bytearray(crypto.from_transport_form(stored.text))
        raw[0] ^= 1
        reader.net.history[DM_ALICE] = [stored.model_copy(update={"text": crypto.to_transport_form(bytes(raw))})]
        run(reader.open_conversation(DM_ALICE))
        [d] = reader.timeline
        assert d.text == PLACEHOLDER_FAILED
        assert d.decryption_failed and not d.decrypted

    def test_reader_without_local_key(self, tmp_path, alice, bob):
        _, reader, stored = self._exchange(tmp_path, alice, bob, "hello")
        reader.keystore.clear_private_key()
        reader.net.history[DM_ALICE] = [stored]
        run(reader.open_conversation(DM_ALICE))
        assert reader.timeline[0].text == PLACEHOLDER_ENCRYPTED

    def test_plaintext_history_passes_through(self, tmp_path, bob):
        reader = make_client(tmp_path, bob, {})
        reader.net.history[DM_ALICE] = [StoredMessage.model_validate(
            {"_id": "m1", "senderId": "alice", "receiverId": "bob", "text": "old plain message"})]
        run(reader.open_conversation(DM_ALICE))
        [d] = reader.timeline
        assert d.text == "old plain message"
        assert not d.is_encrypted and d.signature_valid is None


class TestGroupScenario:
    def test_member_without_key_sees_placeholder(self, tmp_path, alice, bob, carol):
        group = make_group("g1", ["alice", "bob", "carol"])
        conv = Conversation.group("g1")
        keys = {"alice": alice.public_pem, "bob": bob.public_pem, "carol": None}
        sender = make_client(tmp_path, alice, keys, groups=[group])
        stored = _send(sender, conv, "team update").message
        assert [k.recipient_id for k in stored.encrypted_keys] == ["alice", "bob"]

        bob_view = make_client(tmp_path, bob, keys, groups=[group])
        bob_view.net.history[conv] = [stored]
        run(bob_view.open_conversation(conv))
        assert bob_view.timeline[0].text == "team update"
        assert bob_view.timeline[0].signature_valid is True

        carol_view = make_client(tmp_path, carol, keys, groups=[group])
        carol_view.net.history[conv] = [stored]
        run(carol_view.open_conversation(conv))
        [d] = carol_view.timeline
        assert d.text == PLACEHOLDER_NO_KEY
        assert d.no_key and d.decryption_failed

    def test_nobody_has_keys_sends_plaintext(self, tmp_path, alice):
        group = make_group("g1", ["alice", "bob"])
        sender = make_client(tmp_path, alice, {"bob": None}, groups=[group], with_key=False)
        _send(sender, Conversation.group("g1"), "plain")
        assert sender.net.submitted[0]["isEncrypted"] is False

    def test_own_realtime_copy_is_ignored(self, tmp_path, alice, bob):
        group = make_group("g1", ["alice", "bob"])
        conv = Conversation.group("g1")
        coord = make_client(tmp_path, alice, _all_keys(alice, bob), groups=[group])

        async def go():
            await coord.open_conversation(conv)
            sent = await coord.send("mine")
            echo = NewMessage(sent.message, group_id="g1")
            await coord.subscription.dispatch(echo)
            notice = StoredMessage.model_validate({"_id": "s1", "groupId": "g1", "type": "system",
                                                   "senderId": {"_id": "alice"}, "text": "Alice added Bob"})
            await coord.subscription.dispatch(NewMessage(notice, group_id="g1"))

        run(go())
        assert [d.text for d in coord.timeline] == ["mine", "Alice added Bob"]


class TestRealtime:
    def _incoming(self, tmp_path, alice, bob, text="ping"):
        sender = make_client(tmp_path, alice, _all_keys(alice, bob))
        return _send(sender, DM_BOB, text).message

    def test_new_message_is_appended_once(self, tmp_path, alice, bob):
        msg = self._incoming(tmp_path, alice, bob)
        reader = make_client(tmp_path, bob, _all_keys(alice, bob), sound=True)

        async def go():
            await reader.open_conversation(DM_ALICE)
            await reader.subscription.dispatch(NewMessage(msg))
            await reader.subscription.dispatch(NewMessage(msg))

        run(go())
        assert [d.text for d in reader.timeline] == ["ping"]
        assert reader.notifier.chimes == 1

    def test_no_chime_when_sound_is_off(self, tmp_path, alice, bob):
        msg = self._incoming(tmp_path, alice, bob)
        reader = make_client(tmp_path, bob, _all_keys(alice, bob), sound=False)

        async def go():
            await reader.open_conversation(DM_ALICE)
            await reader.subscription.dispatch(NewMessage(msg))

        run(go())
        assert reader.notifier.chimes == 0

    def test_other_conversations_are_ignored(self, tmp_path, alice, bob, carol):
        msg = self._incoming(tmp_path, alice, bob)
        reader = make_client(tmp_path, bob, _all_keys(alice, bob, carol))

        async def go():
            await reader.open_conversation(Conversation.direct("carol"))
            await reader.subscription.dispatch(NewMessage(msg))
            await reader.subscription.dispatch(NewMessage(msg, group_id="g1"))

        run(go())
        assert reader.timeline == []

    def test_closed_subscription_delivers_nothing(self, tmp_path, alice, bob):
        msg = self._incoming(tmp_path, alice, bob)
        reader = make_client(tmp_path, bob, _all_keys(alice, bob))

        async def go():
            stale = await reader.open_conversation(DM_ALICE)
            await reader.open_conversation(Conversation.direct("carol"))
            await stale.dispatch(NewMessage(msg))
            return stale

        stale = run(go())
        assert not stale.active
        assert reader.timeline == []

    def test_message_arriving_during_history_fetch_is_kept(self, tmp_path, alice, bob):
        old = self._incoming(tmp_path, alice, bob, "old")
        live = self._incoming(tmp_path, alice, bob, "live").model_copy(update={"id": "m2"})
        reader = make_client(tmp_path, bob, _all_keys(alice, bob))
        reader.net.history[DM_ALICE] = [old]

        async def arrive():
            await reader.subscription.dispatch(NewMessage(live))
            # an event already covered by the history must not show twice
            await reader.subscription.dispatch(NewMessage(old))

        reader.net.on_fetch = arrive
        run(reader.open_conversation(DM_ALICE))
        assert [d.text for d in reader.timeline] == ["old", "live"]

    def test_deletion_event(self, tmp_path, alice, bob):
        msg = self._incoming(tmp_path, alice, bob)
        reader = make_client(tmp_path, bob, _all_keys(alice, bob))
        reader.net.history[DM_ALICE] = [msg]

        async def go():
            await reader.open_conversation(DM_ALICE)
            await reader.subscription.dispatch(MessageDeleted(msg.id, sender_id="carol"))
            assert len(reader.timeline) == 1
            await reader.subscription.dispatch(MessageDeleted(msg.id, sender_id="alice"))

        run(go())
        assert reader.timeline == []


class TestHistoryAndDelete:
    def test_fetch_failure_keeps_the_timeline(self, tmp_path, alice, bob):
        coord = make_client(tmp_path, alice, _all_keys(alice, bob))
        _send(coord, DM_BOB, "kept")
        coord.net.fail_fetch = RequestError("TIMEOUT", "messages.list timed out")
        assert run(coord.load()) is False
        assert [d.text for d in coord.timeline] == ["kept"]
        assert coord.notifier.errors

    def test_delete(self, tmp_path, alice, bob):
        coord = make_client(tmp_path, alice, _all_keys(alice, bob))
        sent = _send(coord, DM_BOB, "oops")
        assert run(coord.delete(sent.id)) is True
        assert coord.timeline == []
        assert coord.net.deleted == [sent.id]

    def test_failed_delete_keeps_the_message(self, tmp_path, alice, bob):
        coord = make_client(tmp_path, alice, _all_keys(alice, bob))
        sent = _send(coord, DM_BOB, "stays")
        coord.net.fail = RequestError("FORBIDDEN", "You can only delete your own messages")
        assert run(coord.delete(sent.id)) is False
        assert [d.id for d in coord.timeline] == [sent.id]
