import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

_TRUE = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    host: str = "127.0.0.1"
    port: int = 5050
    keystore_dir: Path = Path.home() / ".closer"
    request_timeout: float = 10.0
    sound_enabled: bool = False
    log_level: str = "INFO"


def load_settings() -> Settings:
    ''' Read CHAT_* variables from the environment (and .env, if present) '''
    return Settings(
        host=os.getenv("CHAT_HOST", "127.0.0.1"),
        port=int(os.getenv("CHAT_PORT", "5050")),
        keystore_dir=Path(os.getenv("CHAT_KEYSTORE_DIR", str(Path.home() / ".closer"))).expanduser(),
        request_timeout=float(os.getenv("CHAT_REQUEST_TIMEOUT", "10")),
        sound_enabled=os.getenv("CHAT_SOUND", "false").strip().lower() in _TRUE,
        log_level=os.getenv("CHAT_LOG_LEVEL", "INFO").upper(),
    )
