"""Pick the task store once, at startup.

MongoDB is used when ``USE_MONGODB`` is set and the server answers a ping.
Otherwise, and for the rest of the process lifetime, tasks go to the JSON
file. The choice is never revisited.
"""
import logging

from pymongo.errors import PyMongoError

import database
from config import Settings
from file_storage import FileTaskStore
from storage import TaskStore

logger = logging.getLogger(__name__)


async def open_store(settings: Settings) -> TaskStore:
    if not settings.use_mongodb:
        logger.info("Using file-based storage (MongoDB disabled) at %s", settings.data_file)
        return FileTaskStore(settings.data_file)
    try:
        return await database.connect(settings)
    except (PyMongoError, ValueError) as exc:
        logger.warning("Could not connect to database: %s", exc)
        logger.warning("Falling back to file-based storage at %s", settings.data_file)
        return FileTaskStore(settings.data_file)
