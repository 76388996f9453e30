"""Wire records shared by the client and the server.

Field names follow the JSON documents exchanged on the socket (camelCase),
python attributes are snake_case; ``populate_by_name`` lets both be used.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MessageType = Literal["message", "system"]
SystemAction = Literal["member_added", "member_removed", "member_left", "member_promoted", "member_demoted"]
Role = Literal["creator", "admin", "member"]


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class KeyPair(WireModel):
    public_key: str = Field(alias="publicKey")
    private_key: str = Field(alias="privateKey")


class UserRef(WireModel):
    id: str = Field(alias="_id")
    full_name: str = Field("", alias="fullName")
    profile_pic: str = Field("", alias="profilePic")


class Account(UserRef):
    public_key: Optional[str] = Field(None, alias="publicKey")
    # Escrowed for recovery. The server can read it.
    private_key: Optional[str] = Field(None, alias="privateKey")

    def ref(self) -> UserRef:
        return UserRef(id=self.id, full_name=self.full_name, profile_pic=self.profile_pic)


class WrappedKey(WireModel):
    recipient_id: str = Field(alias="recipientId")
    encrypted_key: str = Field(alias="encryptedKey")


class Envelope(WireModel):
    """Encrypted form of one message text."""

    ciphertext: str
    iv: str
    signature: str
    # direct messages: two named slots
    encrypted_key: Optional[str] = Field(None, alias="encryptedKey")
    sender_encrypted_key: Optional[str] = Field(None, alias="senderEncryptedKey")
    # group messages: one entry per reader
    encrypted_keys: List[WrappedKey] = Field(default_factory=list, alias="encryptedKeys")
    auth_signature: Optional[str] = Field(None, alias="authSignature")

    @property
    def wrapped_count(self) -> int:
        slots = [k for k in (self.encrypted_key, self.sender_encrypted_key) if k]
        return len(slots) + len(self.encrypted_keys)

    @property
    def is_encrypted(self) -> bool:
        return self.wrapped_count > 0

    def key_for(self, recipient_id: str) -> Optional[str]:
        for entry in self.encrypted_keys:
            if entry.recipient_id == recipient_id:
                return entry.encrypted_key
        return None

    def wire_fields(self) -> Dict[str, Any]:
        ''' Envelope fields as they are submitted with a message; ciphertext travels as "text" '''
        d = self.model_dump(by_alias=True, exclude_none=True, exclude={"ciphertext"})
        if not self.encrypted_keys:
            d.pop("encryptedKeys", None)
        d["text"] = self.ciphertext
        d["isEncrypted"] = self.is_encrypted
        return d


class StoredMessage(WireModel):
    id: str = Field(alias="_id")
    sender: Optional[UserRef] = Field(None, alias="senderId")
    receiver_id: Optional[str] = Field(None, alias="receiverId")
    group_id: Optional[str] = Field(None, alias="groupId")
    text: Optional[str] = None
    image: Optional[str] = None
    type: MessageType = "message"
    system_action: Optional[SystemAction] = Field(None, alias="systemAction")
    is_encrypted: bool = Field(False, alias="isEncrypted")
    encrypted_key: Optional[str] = Field(None, alias="encryptedKey")
    sender_encrypted_key: Optional[str] = Field(None, alias="senderEncryptedKey")
    encrypted_keys: List[WrappedKey] = Field(default_factory=list, alias="encryptedKeys")
    iv: Optional[str] = None
    signature: Optional[str] = None
    auth_signature: Optional[str] = Field(None, alias="authSignature")
    sender_public_key: Optional[str] = Field(None, alias="senderPublicKey")
    created_at: Optional[str] = Field(None, alias="createdAt")

    @field_validator("sender", mode="before")
    @classmethod
    def _normalize_sender(cls, v):
        # the server sends either a bare id or the expanded user record
        if isinstance(v, str):
            return {"_id": v}
        return v

    @property
    def sender_id(self) -> Optional[str]:
        return self.sender.id if self.sender else None

    @property
    def is_system(self) -> bool:
        return self.type == "system"

    def envelope(self) -> Optional[Envelope]:
        if not self.is_encrypted or self.text is None or self.iv is None:
            return None
        return Envelope(
            ciphertext=self.text,
            iv=self.iv,
            signature=self.signature or "",
            encrypted_key=self.encrypted_key,
            sender_encrypted_key=self.sender_encrypted_key,
            encrypted_keys=list(self.encrypted_keys),
            auth_signature=self.auth_signature,
        )


class GroupMember(WireModel):
    user: UserRef
    role: Role = "member"

    @field_validator("user", mode="before")
    @classmethod
    def _normalize_user(cls, v):
        if isinstance(v, str):
            return {"_id": v}
        return v


class Group(WireModel):
    id: str = Field(alias="_id")
    name: str
    description: str = ""
    group_pic: str = Field("", alias="groupPic")
    created_by: Optional[str] = Field(None, alias="createdBy")
    members: List[GroupMember] = Field(default_factory=list)
    created_at: Optional[str] = Field(None, alias="createdAt")
    updated_at: Optional[str] = Field(None, alias="updatedAt")

    def member_ids(self) -> List[str]:
        return [m.user.id for m in self.members]

    def role_of(self, user_id: str) -> Optional[str]:
        for m in self.members:
            if m.user.id == user_id:
                return m.role
        return None
