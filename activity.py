"""Activity log. Recording is fire-and-forget: a failure is logged, never raised."""

import logging
from typing import Any, Dict, Optional

from pymongo.database import Database

from database import create_document
from schemas import Activity

logger = logging.getLogger(__name__)


class ActivityLog:
    collection_name = "activity"

    def __init__(self, database: Database) -> None:
        self.db = database

    def record(self, kind: str, entity_type: str, entity_id: str, description: str) -> Optional[str]:
        try:
            entry = Activity(type=kind, entity=entity_type, entity_id=str(entity_id), description=description)
            return create_document(self.db, self.collection_name, entry)
        except Exception:
            logger.exception("Could not record %s activity for %s %s", kind, entity_type, entity_id)
            return None

    def log_delete(self, entity_type: str, item: Dict[str, Any]) -> Optional[str]:
        return self.record("delete", entity_type, item["id"], f'Deleted {entity_type} "{item["id"]}"')
