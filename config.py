import os
import pathlib
import logging
from typing import Optional, List, Tuple

from dotenv import load_dotenv

DOTENV_LOADED = load_dotenv()
logger = logging.getLogger("docchat")


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name, "1" if default else "0") or "").strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str = "") -> List[str]:
    raw = os.getenv(name, default) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


# -----------------------------
# Configuration (env vars)
# -----------------------------
# OpenAI
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_MODELS = _env_list("OPENAI_MODELS", "gpt-4o-mini,gpt-4o,gpt-3.5-turbo")
if OPENAI_MODEL not in OPENAI_MODELS:
    OPENAI_MODELS.insert(0, OPENAI_MODEL)

# System instructions preamble (grounding rules are always appended)
SYSTEM_INSTRUCTIONS_PATH = os.getenv("SYSTEM_INSTRUCTIONS_PATH", "")
DEFAULT_SYSTEM_INSTRUCTIONS = "You are an AI assistant analyzing documents."

# App access
APP_PASSWORD = os.getenv("APP_PASSWORD")
AUTH_REQUIRED = bool(APP_PASSWORD)
# Google sign-in; when set, every request must carry a Google ID token for this audience
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")

# Azure Storage
AZURE_STORAGE_ACCOUNT = os.getenv("AZURE_STORAGE_ACCOUNT")  # e.g. "mystorageacct"
AZURE_STORAGE_CONTAINER = os.getenv("AZURE_STORAGE_CONTAINER")  # e.g. "documents"
AZURE_STORAGE_PREFIX = os.getenv("AZURE_STORAGE_PREFIX", "")  # e.g. "docchat/"
AZURE_STORAGE_CONNECTION_STRING = os.getenv("AZURE_STORAGE_CONNECTION_STRING")  # optional

# Uploads
UPLOAD_REQUIRE_TEXT = _env_bool("UPLOAD_REQUIRE_TEXT", True)
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)))

# Chat turns
FETCH_TIMEOUT_SECONDS = float(os.getenv("FETCH_TIMEOUT_SECONDS", "10"))
FETCH_CONCURRENCY = int(os.getenv("FETCH_CONCURRENCY", "8"))
COMPLETION_TIMEOUT_SECONDS = float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "60"))
MAX_CONTEXT_TOKENS = int(os.getenv("MAX_CONTEXT_TOKENS", "0"))  # 0 = unbounded

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

SYSTEM_INSTRUCTIONS = DEFAULT_SYSTEM_INSTRUCTIONS
SYSTEM_INSTRUCTIONS_SOURCE = "default"
SYSTEM_INSTRUCTIONS_PATH_RESOLVED: Optional[str] = None


def storage_configured() -> bool:
    return bool(AZURE_STORAGE_CONNECTION_STRING or AZURE_STORAGE_ACCOUNT) and bool(AZURE_STORAGE_CONTAINER)


def _format_env_value(key: str, value: Optional[str]) -> str:
    if value is None:
        return "<unset>"
    if not isinstance(value, str):
        return str(value)
    if key in {"OPENAI_API_KEY", "AZURE_STORAGE_CONNECTION_STRING", "APP_PASSWORD"}:
        if value == "":
            return "<unset>"
        return f"****{value[-4:]}" if len(value) > 4 else "****"
    if value == "":
        return "<empty>"
    return value


def _resolve_instructions_path(path_value: str) -> pathlib.Path:
    path = pathlib.Path(path_value)
    if not path.is_absolute():
        path = (pathlib.Path(__file__).resolve().parent / path).resolve()
    return path


def load_system_instructions() -> Tuple[str, str, Optional[str]]:
    if not SYSTEM_INSTRUCTIONS_PATH:
        return DEFAULT_SYSTEM_INSTRUCTIONS, "default", None

    path = _resolve_instructions_path(SYSTEM_INSTRUCTIONS_PATH)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("System instructions file not found: %s. Falling back to default.", path)
        return DEFAULT_SYSTEM_INSTRUCTIONS, "default", str(path)
    except OSError as exc:
        logger.warning(
            "Failed to read system instructions file %s: %s. Falling back to default.",
            path,
            exc,
        )
        return DEFAULT_SYSTEM_INSTRUCTIONS, "default", str(path)

    text = text.strip()
    if text == "":
        logger.warning("System instructions file %s is empty; using default preamble.", path)
        return DEFAULT_SYSTEM_INSTRUCTIONS, "default", str(path)
    return text, "file", str(path)


def reload_system_instructions() -> None:
    global SYSTEM_INSTRUCTIONS, SYSTEM_INSTRUCTIONS_SOURCE, SYSTEM_INSTRUCTIONS_PATH_RESOLVED
    (
        SYSTEM_INSTRUCTIONS,
        SYSTEM_INSTRUCTIONS_SOURCE,
        SYSTEM_INSTRUCTIONS_PATH_RESOLVED,
    ) = load_system_instructions()


def log_env_config() -> None:
    values = {
        "OPENAI_API_KEY": OPENAI_API_KEY,
        "OPENAI_MODEL": OPENAI_MODEL,
        "OPENAI_MODELS": ",".join(OPENAI_MODELS),
        "SYSTEM_INSTRUCTIONS_PATH": SYSTEM_INSTRUCTIONS_PATH,
        "SYSTEM_INSTRUCTIONS_PATH_RESOLVED": SYSTEM_INSTRUCTIONS_PATH_RESOLVED,
        "SYSTEM_INSTRUCTIONS_SOURCE": SYSTEM_INSTRUCTIONS_SOURCE,
        "APP_PASSWORD": APP_PASSWORD,
        "AUTH_REQUIRED": AUTH_REQUIRED,
        "GOOGLE_CLIENT_ID": GOOGLE_CLIENT_ID,
        "AZURE_STORAGE_ACCOUNT": AZURE_STORAGE_ACCOUNT,
        "AZURE_STORAGE_CONTAINER": AZURE_STORAGE_CONTAINER,
        "AZURE_STORAGE_PREFIX": AZURE_STORAGE_PREFIX,
        "AZURE_STORAGE_CONNECTION_STRING": AZURE_STORAGE_CONNECTION_STRING,
        "UPLOAD_REQUIRE_TEXT": UPLOAD_REQUIRE_TEXT,
        "MAX_UPLOAD_BYTES": MAX_UPLOAD_BYTES,
        "FETCH_TIMEOUT_SECONDS": FETCH_TIMEOUT_SECONDS,
        "FETCH_CONCURRENCY": FETCH_CONCURRENCY,
        "COMPLETION_TIMEOUT_SECONDS": COMPLETION_TIMEOUT_SECONDS,
        "MAX_CONTEXT_TOKENS": MAX_CONTEXT_TOKENS,
        "LOG_LEVEL": LOG_LEVEL,
    }

    logger.info("dotenv loaded: %s", DOTENV_LOADED)
    logger.info("Environment configuration:")
    for key, value in values.items():
        logger.info("  %s=%s", key, _format_env_value(key, value))
