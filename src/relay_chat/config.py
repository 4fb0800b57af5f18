import os
from pathlib import Path

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_DIR / "data"
SQLITE_PATH = Path(os.environ.get("SQLITE_PATH", str(DATA_DIR / "chat.db")))

PORT = int(os.environ.get("PORT", "19876"))
ROOT_PATH = os.environ.get("ROOT_PATH", "")

OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
CLAUDE_MODEL = os.environ.get("CLAUDE_MODEL", "claude-sonnet-4-5-20250929")
COMPLETION_TIMEOUT_SECS = float(os.environ.get("COMPLETION_TIMEOUT_SECS", "120"))

DEFAULT_MAX_TOKENS = 256
DEFAULT_TEMPERATURE = 1.0
SUBJECT_MAX_CHARS = 80
