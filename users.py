"""Read-only view of the user directory used by the loan desk."""

from typing import Any, Dict, Optional

from pymongo.database import Database

from database import parse_object_id, to_str_id
from errors import NotFoundError, ValidationError


class UserDirectory:
    collection_name = "user"

    def __init__(self, database: Database) -> None:
        self.users = database[self.collection_name]

    def by_document(self, document_number: str) -> Dict[str, Any]:
        doc = self.users.find_one({"document_number": document_number.strip()})
        if not doc:
            raise NotFoundError("No user found with the given document number")
        return to_str_id(doc)

    def by_id(self, user_id: str) -> Dict[str, Any]:
        doc = self.find(user_id)
        if not doc:
            raise NotFoundError("User not found")
        return doc

    def find(self, user_id: str) -> Optional[Dict[str, Any]]:
        oid = parse_object_id(user_id)
        if oid is None:
            raise ValidationError("Invalid user id")
        return to_str_id(self.users.find_one({"_id": oid}))
