from client.coordinator import DeliveryState, DisplayMessage
from client.session import Conversation
from client.ui import ConsoleUI, render
from common.schema import StoredMessage, UserRef
from helpers import run


def _msg(**kw):
    base = {"_id": "m000123", "senderId": {"_id": "alice", "fullName": "Alice"},
            "createdAt": "2024-05-01T10:00:00.000Z", "text": "hi"}
    base.update(kw)
    return StoredMessage.model_validate(base)


def test_verified_encrypted_message():
    line = render(DisplayMessage(_msg(isEncrypted=True, iv="IV"), "hi", decrypted=True, signature_valid=True))
    assert "Alice: hi" in line
    assert "[e2e]" in line and "[verified]" in line


def test_tampered_and_failed_flags():
    tampered = render(DisplayMessage(_msg(isEncrypted=True, iv="IV"), "hi", decrypted=True, signature_valid=False))
    assert "[may be tampered]" in tampered
    failed = render(DisplayMessage(_msg(isEncrypted=True, iv="IV"), "[Unable to decrypt message]",
                                   decryption_failed=True))
    assert "[encrypted]" in failed and "[decryption failed]" in failed


def test_pending_and_system_lines():
    pending = render(DisplayMessage(_msg(_id="temp-1-0"), "hi", state=DeliveryState.OPTIMISTIC))
    assert pending.endswith("(sending...)")
    system = render(DisplayMessage(_msg(type="system", text="Alice added Bob to the group"),
                                   "Alice added Bob to the group"))
    assert system.startswith("(System)")


class _Coordinator:
    def __init__(self):
        self.conversation = Conversation.direct("bob")
        self.sent = []

    async def send(self, text):
        self.sent.append(text)
        return None


class _Client:
    def __init__(self):
        self.coordinator = _Coordinator()


def test_shortcodes_expand_before_sending():
    client = _Client()
    run(ConsoleUI(client).send_text("nice :thumbsup:"))
    [text] = client.coordinator.sent
    assert text.startswith("nice ")
    assert ":thumbsup:" not in text


class _Groups:
    def __init__(self):
        self.updates = []

    async def update(self, group_id, **fields):
        self.updates.append((group_id, fields))


class _Presence:
    def users(self):
        return {"bob"}


class _Session:
    presence = _Presence()


class _DirectoryClient(_Client):
    def __init__(self):
        super().__init__()
        self.groups = _Groups()
        self.session = _Session()

    async def contacts(self):
        return [UserRef.model_validate({"_id": "bob", "fullName": "Bob"}),
                UserRef.model_validate({"_id": "carol", "fullName": "Carol"})]

    async def chats(self):
        return []


def test_contacts_are_listed_with_presence(capsys):
    run(ConsoleUI(_DirectoryClient()).send_text("/contacts"))
    out = capsys.readouterr().out.splitlines()
    assert out == ["  bob  Bob  (online)", "  carol  Carol"]


def test_no_chats_yet(capsys):
    run(ConsoleUI(_DirectoryClient()).send_text("/chats"))
    assert "Nobody yet" in capsys.readouterr().out


def test_rename_updates_the_open_group():
    client = _DirectoryClient()
    client.coordinator.conversation = Conversation.group("g1")
    run(ConsoleUI(client).send_text('/rename "Weekend plans"'))
    assert client.groups.updates == [("g1", {"name": "Weekend plans"})]


def test_rename_needs_an_open_group(capsys):
    client = _DirectoryClient()
    run(ConsoleUI(client).send_text("/rename Team"))
    assert client.groups.updates == []
    assert "Open a group first" in capsys.readouterr().out
