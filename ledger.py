"""Copy availability ledger.

Holds the physical state of every copy. ``loaned`` and ``available`` are only
reached through the guarded ``mark_*`` calls, each of which is a single
conditional update so two requests racing for the same copy cannot both win.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, parse_object_id, to_str_id
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Copy, CopyState

logger = logging.getLogger(__name__)

CORRECTION_STATES = frozenset({CopyState.DAMAGED, CopyState.LOST})


def _coerce_state(state) -> CopyState:
    try:
        return CopyState(state)
    except ValueError:
        raise ValidationError(f"Invalid copy state: {state}") from None


class CopyLedger:
    collection_name = "copy"

    def __init__(self, database: Database) -> None:
        self.db = database
        self.copies = database[self.collection_name]

    def _oid(self, copy_id: str):
        oid = parse_object_id(copy_id)
        if oid is None:
            raise ValidationError("Invalid copy id")
        return oid

    def get(self, copy_id: str) -> Dict[str, Any]:
        doc = self.copies.find_one({"_id": self._oid(copy_id)})
        if not doc:
            raise NotFoundError("Copy not found")
        return to_str_id(doc)

    def list_by_book(self, book_id: str) -> List[Dict[str, Any]]:
        docs = self.copies.find({"book_id": book_id}).sort("code", ASCENDING)
        return [to_str_id(d) for d in docs]

    def create(self, book_id: str, code: str, state: CopyState = CopyState.AVAILABLE,
               location: Optional[str] = None) -> Dict[str, Any]:
        copy = Copy(book_id=book_id, code=code.strip(), state=_coerce_state(state),
                    location=location.strip() if location else None)
        try:
            new_id = create_document(self.db, self.collection_name, copy)
        except DuplicateKeyError:
            raise ConflictError(f"A copy with code {copy.code} already exists") from None
        logger.info("Catalogued copy %s (%s) for book %s", new_id, copy.code, book_id)
        return self.get(new_id)

    def set_state(self, copy_id: str, new_state) -> Dict[str, Any]:
        """Unconditional damaged/lost correction.

        ``available`` and ``loaned`` belong to the loan actions and are refused.
        """
        state = _coerce_state(new_state)
        if state not in CORRECTION_STATES:
            raise ValidationError(
                f"Copy state {state.value} is set by requesting, returning or cancelling a loan"
            )
        doc = self.copies.find_one_and_update(
            {"_id": self._oid(copy_id)},
            {"$set": {"state": state.value, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise NotFoundError("Copy not found")
        logger.info("Copy %s state set to %s", copy_id, state.value)
        return to_str_id(doc)

    def _transition(self, copy_id: str, expected: CopyState, target: CopyState) -> Dict[str, Any]:
        oid = self._oid(copy_id)
        doc = self.copies.find_one_and_update(
            {"_id": oid, "state": expected.value},
            {"$set": {"state": target.value, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            logger.debug("Copy %s moved %s -> %s", copy_id, expected.value, target.value)
            return to_str_id(doc)
        current = self.copies.find_one({"_id": oid}, {"state": 1})
        if not current:
            raise NotFoundError("Copy not found")
        raise ConflictError(
            f"Copy {copy_id} is {current.get('state')}, expected {expected.value}"
        )

    def mark_loaned(self, copy_id: str) -> Dict[str, Any]:
        return self._transition(copy_id, CopyState.AVAILABLE, CopyState.LOANED)

    def mark_available(self, copy_id: str) -> Dict[str, Any]:
        # An already available, damaged or lost copy is rejected, never silently freed.
        return self._transition(copy_id, CopyState.LOANED, CopyState.AVAILABLE)
