import os
import json
from pathlib import Path
from typing import Optional

CONFIG_DIR = Path(os.getenv("AUCTION_CONFIG_DIR", Path.home() / ".vehicle-auction"))
CONFIG_FILE = CONFIG_DIR / "config.json"
TOKEN_FILE = CONFIG_DIR / "token.txt"
SERVER_URL = os.getenv("AUCTION_SERVER_URL", "http://localhost:8000")
REQUEST_TIMEOUT_SECONDS = float(os.getenv("AUCTION_REQUEST_TIMEOUT", 10))


def ensure_config_dir():
    """Ensure config directory exists."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)


def get_token() -> Optional[str]:
    """Get stored API token."""
    if TOKEN_FILE.exists():
        return TOKEN_FILE.read_text().strip()
    return None


def save_token(token: str):
    """Save API token."""
    ensure_config_dir()
    TOKEN_FILE.write_text(token)


def _zoneinfo_name(path: Path) -> Optional[str]:
    # /usr/share/zoneinfo/Europe/London -> Europe/London
    parts = path.parts
    for marker in ("zoneinfo", "zoneinfo.default"):
        if marker in parts:
            name = "/".join(parts[parts.index(marker) + 1:])
            if name:
                return name
    return None


def get_timezone() -> str:
    """Timezone for displaying auction times: config file, then TZ, then the system zone."""
    if CONFIG_FILE.exists():
        configured_tz = json.loads(CONFIG_FILE.read_text()).get("timezone")
        if configured_tz:
            return configured_tz

    if os.getenv("TZ"):
        return os.environ["TZ"]

    localtime_path = Path("/etc/localtime")
    if localtime_path.exists():
        name = _zoneinfo_name(localtime_path.resolve())
        if name:
            return name

    return "UTC"
