import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from dotenv import load_dotenv


# Load .env once at import time (support running from any cwd)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")


@dataclass(frozen=True)
class Settings:
    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # STUN/TURN
    STUN_SERVER: str | None = os.getenv("STUN_SERVER")
    TURN_URL: str | None = os.getenv("TURN_URL")
    TURN_USERNAME: str | None = os.getenv("TURN_USERNAME")
    TURN_PASSWORD: str | None = os.getenv("TURN_PASSWORD")

    # Client session channel
    SIGNALING_URL: str = os.getenv("SIGNALING_URL", "ws://localhost:8080/ws")
    RECONNECT_ATTEMPTS: int = int(os.getenv("RECONNECT_ATTEMPTS", "5"))
    RECONNECT_DELAY: float = float(os.getenv("RECONNECT_DELAY", "1.0"))
    DEFAULT_DISPLAY_NAME: str = os.getenv("DEFAULT_DISPLAY_NAME", "Anonymous")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

# Convenient module-level alias
settings = get_settings()


def ice_servers(config: Settings | None = None) -> list[dict]:
    """ICE server list shared by the /config endpoint and the client transport.

    Environment variables (optional):
    - STUN_SERVER: e.g. stun:stun.example.com:3478
    - TURN_URL: e.g. turn:turn.example.com:3478
    - TURN_USERNAME
    - TURN_PASSWORD
    """
    config = config or settings
    servers = []
    if config.STUN_SERVER:
        servers.append({"urls": config.STUN_SERVER})
    # Always include Google public STUN as fallback
    servers.extend([
        {"urls": "stun:stun.l.google.com:19302"},
        {"urls": "stun:stun1.l.google.com:19302"},
    ])

    if config.TURN_URL and config.TURN_USERNAME and config.TURN_PASSWORD:
        servers.append({
            "urls": config.TURN_URL,
            "username": config.TURN_USERNAME,
            "credential": config.TURN_PASSWORD,
        })
    return servers
