"""Loan lifecycle.

A loan is created ``requested`` against an ``available`` copy and the copy is
flipped to ``loaned`` in the same operation. Staff approve or reject it,
approved loans are returned, and any loan still holding its copy can be
cancelled. Every move out of a copy-holding status into a terminal one asks
the ledger to release the copy.

``overdue`` is normally a read-time view of an approved loan past its due
date. It can also be stored through an administrative edit, in which case
the loan still holds its copy.
"""

import logging
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from activity import ActivityLog
from database import create_document, parse_object_id, to_str_id
from errors import (
    ConflictError,
    CopyUnavailableError,
    LibraryError,
    NotFoundError,
    PermissionDenied,
    ReconciliationWarning,
    ValidationError,
)
from ledger import CopyLedger
from schemas import CopyState, Loan, LoanStatus
from users import UserDirectory

logger = logging.getLogger(__name__)


class LoanEvent(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    RETURN = "return"
    CANCEL = "cancel"


OPEN_STATUSES = frozenset({LoanStatus.REQUESTED, LoanStatus.APPROVED})
HOLDING_STATUSES = OPEN_STATUSES | {LoanStatus.OVERDUE}
TERMINAL_STATUSES = frozenset({LoanStatus.REJECTED, LoanStatus.RETURNED, LoanStatus.CANCELLED})

TRANSITIONS = {
    (LoanStatus.REQUESTED, LoanEvent.APPROVE): LoanStatus.APPROVED,
    (LoanStatus.REQUESTED, LoanEvent.REJECT): LoanStatus.REJECTED,
    (LoanStatus.APPROVED, LoanEvent.RETURN): LoanStatus.RETURNED,
    (LoanStatus.OVERDUE, LoanEvent.RETURN): LoanStatus.RETURNED,
    (LoanStatus.REQUESTED, LoanEvent.CANCEL): LoanStatus.CANCELLED,
    (LoanStatus.APPROVED, LoanEvent.CANCEL): LoanStatus.CANCELLED,
    (LoanStatus.OVERDUE, LoanEvent.CANCEL): LoanStatus.CANCELLED,
}

_EVENT_BY_TARGET = {
    LoanStatus.APPROVED: LoanEvent.APPROVE,
    LoanStatus.REJECTED: LoanEvent.REJECT,
    LoanStatus.RETURNED: LoanEvent.RETURN,
    LoanStatus.CANCELLED: LoanEvent.CANCEL,
}

BOOK_SUMMARY_FIELDS = ("title", "isbn")
USER_SUMMARY_FIELDS = ("full_name", "email", "document_number")


def parse_status(value) -> LoanStatus:
    try:
        return LoanStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid status: {value}") from None


def parse_event(value) -> LoanEvent:
    try:
        return LoanEvent(value)
    except ValueError:
        raise ValidationError(f"Invalid loan action: {value}") from None


def event_for_status(value) -> LoanEvent:
    """Map a requested target status onto the event that reaches it."""
    status = parse_status(value)
    if status not in _EVENT_BY_TARGET:
        raise ValidationError(f"Status {status.value} cannot be reached by a loan action")
    return _EVENT_BY_TARGET[status]


def next_status(current: LoanStatus, event: LoanEvent) -> LoanStatus:
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise ConflictError(f"Cannot {event.value} a loan that is {current.value}")
    return target


def authorize_event(event: LoanEvent, actor, loan: Dict[str, Any]) -> None:
    """Staff may do anything; a borrower may only cancel their own loan."""
    if actor.is_staff:
        return
    if event is LoanEvent.CANCEL and loan.get("user_id") == actor.id:
        return
    raise PermissionDenied(f"You are not allowed to {event.value} this loan")


def releases_copy(previous: LoanStatus, new: LoanStatus) -> bool:
    return previous in HOLDING_STATUSES and new in TERMINAL_STATUSES


def reclaims_copy(previous: LoanStatus, new: LoanStatus) -> bool:
    """True when a closed loan is reopened and must take its copy back."""
    return previous in TERMINAL_STATUSES and new in HOLDING_STATUSES


def is_overdue(loan: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """True when a loan still holding its copy is past its due date."""
    now = now or datetime.utcnow()
    if loan.get("return_date") is not None:
        return False
    if loan.get("status") not in (LoanStatus.APPROVED.value, LoanStatus.OVERDUE.value):
        return False
    due = loan.get("due_date")
    return due is not None and now.date() > due.date()


def to_datetime(value, field: str) -> datetime:
    """Coerce a date, datetime or ISO string into a naive UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid {field} format") from None
    else:
        raise ValidationError(f"Invalid {field} format")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class UpdateResult(NamedTuple):
    loan: Dict[str, Any]
    warning: Optional[ReconciliationWarning] = None


class LoanService:
    collection_name = "loan"

    def __init__(self, database: Database, ledger: Optional[CopyLedger] = None,
                 users: Optional[UserDirectory] = None, activity: Optional[ActivityLog] = None) -> None:
        self.db = database
        self.loans = database[self.collection_name]
        self.ledger = ledger or CopyLedger(database)
        self.users = users or UserDirectory(database)
        self.activity = activity or ActivityLog(database)

    # ---- reads
    def _oid(self, loan_id: str) -> ObjectId:
        oid = parse_object_id(loan_id)
        if oid is None:
            raise ValidationError("Invalid loan id")
        return oid

    def _find(self, loan_id: str) -> Dict[str, Any]:
        doc = self.loans.find_one({"_id": self._oid(loan_id)})
        if not doc:
            raise NotFoundError("Loan not found")
        return doc

    def _present(self, doc: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        loan = to_str_id(dict(doc))
        overdue = is_overdue(loan, now)
        loan["is_overdue"] = overdue
        loan["display_status"] = LoanStatus.OVERDUE.value if overdue else loan.get("status")
        return loan

    def get_loan(self, loan_id: str) -> Dict[str, Any]:
        return self._present(self._find(loan_id))

    def _summaries(self, collection: str, ids: Iterable[str], fields) -> Dict[str, Dict[str, Any]]:
        oids = [oid for oid in (parse_object_id(i) for i in set(ids)) if oid is not None]
        if not oids:
            return {}
        projection = {f: 1 for f in fields}
        out = {}
        for doc in self.db[collection].find({"_id": {"$in": oids}}, projection):
            summary = {"id": str(doc["_id"])}
            summary.update({f: doc.get(f) for f in fields})
            out[summary["id"]] = summary
        return out

    def list_loans(self, status: Optional[str] = None, user_id: Optional[str] = None,
                   now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        wanted = parse_status(status).value if status else None
        query: Dict[str, Any] = {}
        if user_id:
            query["user_id"] = user_id
        docs = list(self.loans.find(query).sort("created_at", DESCENDING))

        books_map = self._summaries("book", (d.get("book_id") for d in docs), BOOK_SUMMARY_FIELDS)
        users_map = {}
        if not user_id:
            users_map = self._summaries("user", (d.get("user_id") for d in docs), USER_SUMMARY_FIELDS)

        out: List[Dict[str, Any]] = []
        for d in docs:
            loan = self._present(d, now)
            if wanted and loan["display_status"] != wanted:
                continue
            loan["book"] = books_map.get(loan.get("book_id"))
            if not user_id:
                loan["user"] = users_map.get(loan.get("user_id"))
            out.append(loan)
        return out

    def list_user_loans(self, user_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return self.list_loans(user_id=user_id, now=now)

    # ---- request
    def request_loan(self, copy_id: str, document_number: str, due_date, actor=None,
                     now: Optional[datetime] = None) -> Dict[str, Any]:
        missing = [name for name, value in (("copy_id", copy_id), ("due_date", due_date),
                                            ("document_number", document_number)) if not value]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        now = now or datetime.utcnow()
        due = to_datetime(due_date, "due_date")
        if due.date() < now.date():
            raise ValidationError("Due date cannot be in the past")

        borrower = self.users.by_document(document_number)
        if not borrower.get("active", True):
            raise ValidationError("User is inactive")

        copy = self.ledger.get(copy_id)
        if copy.get("state") != CopyState.AVAILABLE.value:
            raise CopyUnavailableError("The copy is not available for loan")

        loan = Loan(
            copy_id=copy["id"],
            book_id=copy["book_id"],
            user_id=borrower["id"],
            loan_date=now,
            due_date=due,
            status=LoanStatus.REQUESTED,
        )
        loan_id = create_document(self.db, self.collection_name, loan)

        try:
            self.ledger.mark_loaned(copy["id"])
        except LibraryError as exc:
            logger.warning("Copy %s could not be marked loaned (%s); removing loan %s",
                           copy["id"], exc.message, loan_id)
            self.loans.delete_one({"_id": ObjectId(loan_id)})
            raise

        logger.info("Loan %s requested for copy %s by user %s (actor %s)",
                    loan_id, copy["id"], borrower["id"], getattr(actor, "id", None))
        self.activity.record("create", "loan", loan_id,
                             f'Loan requested for copy "{copy.get("code")}" by "{borrower.get("full_name")}"')
        return self.get_loan(loan_id)

    # ---- updates
    def update_loan(self, loan_id: str, due_date=None, loan_date=None, status=None,
                    now: Optional[datetime] = None) -> UpdateResult:
        """Administrative edit of dates and/or status."""
        if due_date is None and loan_date is None and status is None:
            raise ValidationError("At least one field (due_date, loan_date, status) must be provided")
        new_status = parse_status(status) if status is not None else None
        changes: Dict[str, Any] = {}
        if due_date is not None:
            changes["due_date"] = to_datetime(due_date, "due_date")
        if loan_date is not None:
            changes["loan_date"] = to_datetime(loan_date, "loan_date")

        doc = self._find(loan_id)
        return self._apply(doc, changes, new_status, now or datetime.utcnow())

    def apply_event(self, loan_id: str, event, actor, now: Optional[datetime] = None) -> UpdateResult:
        event = parse_event(event)
        doc = self._find(loan_id)
        authorize_event(event, actor, doc)
        target = next_status(parse_status(doc.get("status")), event)
        return self._apply(doc, {}, target, now or datetime.utcnow())

    def _apply(self, doc: Dict[str, Any], changes: Dict[str, Any], new_status: Optional[LoanStatus],
               now: datetime) -> UpdateResult:
        previous = parse_status(doc.get("status"))

        loan_date = changes.get("loan_date", doc.get("loan_date"))
        due_date = changes.get("due_date", doc.get("due_date"))
        if loan_date and due_date and due_date.date() < loan_date.date():
            raise ValidationError("Due date must be on or after the loan date")

        update = dict(changes, updated_at=now)
        if new_status is not None:
            update["status"] = new_status.value
            if new_status is LoanStatus.RETURNED:
                if previous is not LoanStatus.RETURNED:
                    update["return_date"] = now
            else:
                update["return_date"] = None

        # Taking the copy back comes first; a held copy leaves the loan untouched.
        reclaimed = new_status is not None and reclaims_copy(previous, new_status)
        if reclaimed:
            self.ledger.mark_loaned(doc.get("copy_id"))

        updated = self.loans.find_one_and_update(
            {"_id": doc["_id"], "status": previous.value},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            if reclaimed:
                self._undo_reclaim(str(doc["_id"]), doc.get("copy_id"))
            if self.loans.count_documents({"_id": doc["_id"]}) == 0:
                raise NotFoundError("Loan not found")
            raise ConflictError("The loan was modified by another request; reload and try again")

        loan_id = str(updated["_id"])
        warning = None
        if new_status is not None and releases_copy(previous, new_status):
            warning = self._release_copy(loan_id, updated.get("copy_id"))

        if new_status is not None and new_status is not previous:
            logger.info("Loan %s moved %s -> %s", loan_id, previous.value, new_status.value)
        self.activity.record("update", "loan", loan_id,
                             f'Updated loan "{loan_id}" (status {updated.get("status")})')
        return UpdateResult(self._present(updated, now), warning)

    def _release_copy(self, loan_id: str, copy_id: Optional[str]) -> Optional[ReconciliationWarning]:
        if not copy_id:
            return None
        try:
            self.ledger.mark_available(copy_id)
        except LibraryError as exc:
            message = f"Loan updated, but copy {copy_id} could not be released: {exc.message}"
            logger.warning("Reconciliation needed for loan %s: %s", loan_id, message)
            return ReconciliationWarning(message, copy_id=copy_id, cause=exc)
        return None

    def _undo_reclaim(self, loan_id: str, copy_id: str) -> None:
        try:
            self.ledger.mark_available(copy_id)
        except LibraryError as exc:
            logger.warning("Reconciliation needed for loan %s: copy %s stays loaned (%s)",
                           loan_id, copy_id, exc.message)
        else:
            logger.warning("Loan %s changed underneath its reopen; copy %s released again", loan_id, copy_id)

    # ---- delete
    def delete_loan(self, loan_id: str) -> Dict[str, Any]:
        """Hard delete. The copy is left as it is."""
        doc = self._find(loan_id)
        result = self.loans.delete_one({"_id": doc["_id"]})
        if result.deleted_count == 0:
            raise NotFoundError("Loan not found")
        loan = self._present(doc)
        if loan.get("status") in {s.value for s in HOLDING_STATUSES}:
            logger.warning("Deleted loan %s while it still held copy %s", loan["id"], loan.get("copy_id"))
        self.activity.log_delete("loan", loan)
        return loan
