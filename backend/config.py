import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DATA_FILE = Path(__file__).parent / "data.json"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


class Settings:
    """Process configuration, read from the environment (and .env) when created."""

    def __init__(self):
        self.use_mongodb = _flag("USE_MONGODB")
        self.mongo_conn_str = os.getenv("MONGO_CONN_STR", "")
        self.use_db_auth = _flag("USE_DB_AUTH")
        self.mongo_username = os.getenv("MONGO_USERNAME")
        self.mongo_password = os.getenv("MONGO_PASSWORD")
        self.database_name = os.getenv("DATABASE_NAME", "todo_app")
        self.mongo_timeout_ms = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))
        self.data_file = Path(os.getenv("DATA_FILE", str(DEFAULT_DATA_FILE)))
        self.environment = os.getenv("ENVIRONMENT", "development")
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.port = int(os.getenv("PORT", "3500"))


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
