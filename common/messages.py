import datetime
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any

FRAME_TYPES = ("auth", "key", "welcome", "req", "res", "event", "system", "error")


def iso_now() -> str:
    '''Return current UTC time in ISO format'''
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# Frame fields remain in plaintext so the server can route without decrypting the payload.
@dataclass
class Frame:
    type: str            # one of FRAME_TYPES
    sender: Optional[str] = None
    to: Optional[str] = None     # username, group room, or "*"
    ts: str = field(default_factory=iso_now)
    payload: Dict[str, Any] = field(default_factory=dict)  # plaintext during handshake, session-encrypted after

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Frame":
        if d.get("type") not in FRAME_TYPES:
            raise ValueError(f"unknown frame type: {d.get('type')!r}")
        return cls(type=d["type"], sender=d.get("sender"), to=d.get("to"),
                   ts=d.get("ts") or iso_now(), payload=d.get("payload") or {})
