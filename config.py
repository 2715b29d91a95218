import os
from typing import Any, Dict

import yaml

ROOT_DIR = os.path.dirname(__file__)


def _load_dotenv(path: str, existing_env: set[str], allow_override: bool = False) -> None:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[7:].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                current_value = str(os.environ.get(key, "") or "").strip()
                # Do not treat empty pre-existing env vars as authoritative.
                if key in existing_env and current_value:
                    continue
                if key in os.environ and (not allow_override) and current_value:
                    continue
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                    value = value[1:-1]
                os.environ[key] = value
    except OSError:
        return


_EXISTING_ENV = set(os.environ.keys())
_load_dotenv(os.path.join(ROOT_DIR, ".env"), _EXISTING_ENV, allow_override=False)
_load_dotenv(os.path.join(ROOT_DIR, ".env.local"), _EXISTING_ENV, allow_override=True)

APP_ENV = os.getenv("APP_ENV", "dev")
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(ROOT_DIR, "config.yaml"))

# Secrets are only ever read from the process environment, never from config.yaml.
_ENV_ONLY_KEYS = {
    "POLAR_WEBHOOK_SECRET",
    "POLAR_ACCESS_TOKEN",
    "DATABASE_URL",
    "REDIS_URL",
}


def _load_config(path: str, env: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw_data: Any = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return {}
    data = raw_data or {}
    if isinstance(data, dict) and env in data and isinstance(data[env], dict):
        return dict(data[env])
    if isinstance(data, dict):
        return dict(data)
    return {}


_CONFIG = _load_config(CONFIG_PATH, APP_ENV)


def _get(name: str, default: Any) -> Any:
    if name in os.environ:
        return os.environ[name]
    if name in _ENV_ONLY_KEYS:
        return default
    if isinstance(_CONFIG, dict):
        if name in _CONFIG:
            return _CONFIG[name]
        lower = name.lower()
        if lower in _CONFIG:
            return _CONFIG[lower]
    return default


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes"}


APP_VERSION = str(_get("APP_VERSION", "0.1.0"))
API_HOST = _get("API_HOST", "127.0.0.1")
API_PORT = int(_get("API_PORT", "8020"))
_root_path = str(_get("ROOT_PATH", "")).strip()
if _root_path and not _root_path.startswith("/"):
    _root_path = f"/{_root_path}"
ROOT_PATH = _root_path.rstrip("/") if _root_path else ""
LOG_LEVEL = str(_get("LOG_LEVEL", "INFO")).strip().upper() or "INFO"

DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.sharebox', 'sharebox.db')}",
    )
).strip()
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"), False)
STARTUP_BOOTSTRAP_ENABLED = _parse_bool(_get("STARTUP_BOOTSTRAP_ENABLED", "true"), True)

REDIS_URL = str(_get("REDIS_URL", "redis://localhost:6379/0")).strip()
REDIS_DISABLED = _parse_bool(_get("REDIS_DISABLED", "false"), False)

# Polar billing provider.
POLAR_WEBHOOK_SECRET = str(_get("POLAR_WEBHOOK_SECRET", "")).strip()
POLAR_WEBHOOK_TOLERANCE_SECONDS = int(_get("POLAR_WEBHOOK_TOLERANCE_SECONDS", "300"))
POLAR_PRODUCT_PRO = str(_get("POLAR_PRODUCT_PRO", "")).strip()
# Optional JSON object: {"<product id>": {"plan": "PRO", "interval": "MONTH"}}
POLAR_PRODUCT_MAP = str(_get("POLAR_PRODUCT_MAP", "")).strip()
SUBSCRIPTION_LOCK_TIMEOUT_SECONDS = float(_get("SUBSCRIPTION_LOCK_TIMEOUT_SECONDS", "30"))
SUBSCRIPTION_LOCK_WAIT_SECONDS = float(_get("SUBSCRIPTION_LOCK_WAIT_SECONDS", "10"))

# Polar API (checkout creation and user-initiated cancellation).
POLAR_ACCESS_TOKEN = str(_get("POLAR_ACCESS_TOKEN", "")).strip()
_polar_default_api = (
    "https://api.polar.sh" if APP_ENV.strip().lower() in {"prod", "production"} else "https://sandbox-api.polar.sh"
)
POLAR_API_BASE_URL = str(_get("POLAR_API_BASE_URL", _polar_default_api)).strip().rstrip("/")
POLAR_API_TIMEOUT_SECONDS = float(_get("POLAR_API_TIMEOUT_SECONDS", "20"))
POLAR_CHECKOUT_SUCCESS_URL = str(_get("POLAR_CHECKOUT_SUCCESS_URL", "")).strip()
POLAR_CHECKOUT_RETURN_URL = str(_get("POLAR_CHECKOUT_RETURN_URL", "")).strip()

CORS_ORIGINS = [
    origin.strip()
    for origin in str(
        _get(
            "CORS_ORIGINS",
            "http://127.0.0.1:5173,http://localhost:5173",
        )
    ).split(",")
    if origin.strip()
]
