"""Application configuration."""

import os
from pathlib import Path

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    return int(raw)


BOT_INSTANCE_ID = os.getenv("BOT_INSTANCE_ID", "").strip()
RUN_TAG = os.getenv("RUN_TAG", BOT_INSTANCE_ID).strip()

# Chain connectivity
WS_ENDPOINT = os.getenv("WS_ENDPOINT", "ws://127.0.0.1:9944").strip()
SS58_FORMAT = _env_optional_int("SS58_FORMAT")
RPC_CONNECT_RETRIES = max(1, int(os.getenv("RPC_CONNECT_RETRIES", "3")))
RPC_RETRY_DELAYS_SECONDS = [1, 2, 4]

# Signer
MNEMONIC = os.getenv("MNEMONIC", "").strip()
KEYPAIR_CRYPTO_TYPE = os.getenv("KEYPAIR_CRYPTO_TYPE", "sr25519").strip().lower()

# Recovery policy
REF_TIME = max(0, int(os.getenv("REF_TIME", "1000000000")))
PROOF_SIZE = max(0, int(os.getenv("PROOF_SIZE", "100000")))
BATCH_LIMIT = max(1, int(os.getenv("BATCH_LIMIT", "10")))
POST_SUBMIT_COOLDOWN_BLOCKS = max(0, int(os.getenv("POST_SUBMIT_COOLDOWN_BLOCKS", "4")))
SERVICE_HEAD_COOLDOWN_BLOCKS = max(0, int(os.getenv("SERVICE_HEAD_COOLDOWN_BLOCKS", "4")))
BATCH_FAILURE_COOLDOWN_BLOCKS = max(0, int(os.getenv("BATCH_FAILURE_COOLDOWN_BLOCKS", "300")))
DRY_RUN = _env_bool("DRY_RUN", "false")

# Status endpoint
STATUS_SERVER_ENABLED = _env_bool("STATUS_SERVER_ENABLED", "false")
STATUS_HOST = os.getenv("STATUS_HOST", "127.0.0.1").strip()
STATUS_PORT = int(os.getenv("STATUS_PORT", "8089"))

# Logging
BLOCK_DECISIONS_LOG_ENABLED = _env_bool("BLOCK_DECISIONS_LOG_ENABLED", "true")
BLOCK_DECISIONS_LOG_FILE = os.getenv("BLOCK_DECISIONS_LOG_FILE", os.path.join("logs", "block_decisions.jsonl"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
