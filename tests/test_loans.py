from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from auth import Principal
from errors import (
    ConflictError,
    CopyUnavailableError,
    LibraryError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from schemas import Role

NOW = datetime(2026, 10, 18, 12, 0, 0)
DUE = NOW + timedelta(days=7)
LIBRARIAN = Principal(id="staff", role=Role.LIBRARIAN)


def open_loans_for(db, copy_id):
    return db["loan"].count_documents({"copy_id": copy_id, "status": {"$in": ["requested", "approved"]}})


def test_request_loan_marks_copy_loaned(service, ledger, make_user, make_copy):
    user = make_user("1001")
    copy = make_copy()

    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)

    assert loan["status"] == "requested"
    assert loan["user_id"] == user["id"]
    assert loan["book_id"] == copy["book_id"]
    assert loan["return_date"] is None
    assert ledger.get(copy["id"])["state"] == "loaned"


def test_second_request_for_same_copy_is_refused(db, service, make_user, make_copy):
    make_user("1001")
    make_user("1002")
    copy = make_copy()
    service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)

    with pytest.raises(CopyUnavailableError):
        service.request_loan(copy["id"], "1002", DUE.date(), now=NOW)
    assert db["loan"].count_documents({}) == 1


def test_full_lifecycle(db, service, ledger, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)

    approved = service.update_loan(loan["id"], status="approved", now=NOW)
    assert approved.loan["status"] == "approved"
    assert approved.warning is None
    assert ledger.get(copy["id"])["state"] == "loaned"

    returned = service.update_loan(loan["id"], status="returned", now=NOW)
    assert returned.loan["status"] == "returned"
    assert returned.loan["return_date"] is not None
    assert returned.warning is None
    assert ledger.get(copy["id"])["state"] == "available"
    assert open_loans_for(db, copy["id"]) == 0


def test_compensation_when_copy_vanishes(db, service, ledger, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    original = ledger.mark_loaned

    def vanish_then_mark(copy_id):
        db["copy"].delete_one({"_id": ObjectId(copy_id)})
        return original(copy_id)

    ledger.mark_loaned = vanish_then_mark

    with pytest.raises(NotFoundError):
        service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)
    assert db["loan"].count_documents({}) == 0


def test_compensation_when_race_is_lost(db, service, ledger, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    original = ledger.mark_loaned

    def someone_else_first(copy_id):
        original(copy_id)
        return original(copy_id)

    ledger.mark_loaned = someone_else_first

    with pytest.raises(ConflictError):
        service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)
    assert db["loan"].count_documents({}) == 0


def test_update_without_fields_is_rejected(db, service, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)
    before = db["loan"].find_one({"_id": ObjectId(loan["id"])})

    with pytest.raises(ValidationError):
        service.update_loan(loan["id"])
    assert db["loan"].find_one({"_id": ObjectId(loan["id"])}) == before


def test_update_with_unknown_status(service, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)

    with pytest.raises(ValidationError):
        service.update_loan(loan["id"], status="lent")


def test_due_date_before_loan_date_is_rejected(service, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)

    with pytest.raises(ValidationError):
        service.update_loan(loan["id"], due_date="2026-10-01")
    updated = service.update_loan(loan["id"], due_date="2026-11-01", now=NOW)
    assert updated.loan["due_date"] == datetime(2026, 11, 1)


def test_request_validation(service, make_user, make_copy):
    make_user("1001")
    copy = make_copy()

    with pytest.raises(ValidationError):
        service.request_loan(copy["id"], "1001", None, now=NOW)
    with pytest.raises(ValidationError):
        service.request_loan(copy["id"], "1001", "not a date", now=NOW)
    with pytest.raises(ValidationError):
        service.request_loan(copy["id"], "1001", (NOW - timedelta(days=1)).date(), now=NOW)


def test_request_unknown_borrower_or_copy(service, make_user, make_copy):
    make_user("1001")
    copy = make_copy()

    with pytest.raises(NotFoundError):
        service.request_loan(copy["id"], "9999", DUE.date(), now=NOW)
    with pytest.raises(NotFoundError):
        service.request_loan(str(ObjectId()), "1001", DUE.date(), now=NOW)


def test_inactive_borrower_is_refused(service, make_user, make_copy):
    make_user("1001", active=False)
    copy = make_copy()

    with pytest.raises(ValidationError):
        service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)


def test_damaged_copy_cannot_be_requested(service, make_user, make_copy):
    make_user("1001")
    copy = make_copy(state="damaged")

    with pytest.raises(CopyUnavailableError):
        service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)


def test_return_warns_when_copy_cannot_be_released(service, ledger, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)
    service.update_loan(loan["id"], status="approved", now=NOW)
    ledger.set_state(copy["id"], "damaged")

    result = service.update_loan(loan["id"], status="returned", now=NOW)

    assert result.loan["status"] == "returned"
    assert result.loan["return_date"] is not None
    assert result.warning is not None
    assert result.warning.copy_id == copy["id"]
    assert isinstance(result.warning.cause, ConflictError)
    assert not isinstance(result.warning, LibraryError)
    assert ledger.get(copy["id"])["state"] == "damaged"


def test_leaving_returned_clears_return_date(service, ledger, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)
    service.update_loan(loan["id"], status="returned", now=NOW)

    result = service.update_loan(loan["id"], status="approved", now=NOW)

    assert result.loan["status"] == "approved"
    assert result.loan["return_date"] is None
    assert ledger.get(copy["id"])["state"] == "loaned"


def test_reopening_refused_while_copy_is_held_elsewhere(db, service, ledger, make_user, make_copy):
    make_user("1001")
    make_user("1002")
    copy = make_copy()
    first = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)
    service.apply_event(first["id"], "reject", LIBRARIAN, now=NOW)
    service.request_loan(copy["id"], "1002", DUE.date(), now=NOW)

    with pytest.raises(ConflictError):
        service.update_loan(first["id"], status="approved", now=NOW)

    assert service.get_loan(first["id"])["status"] == "rejected"
    assert open_loans_for(db, copy["id"]) == 1
    assert ledger.get(copy["id"])["state"] == "loaned"


def test_reopening_refused_for_lost_copy(service, ledger, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)
    service.apply_event(loan["id"], "cancel", LIBRARIAN, now=NOW)
    ledger.set_state(copy["id"], "lost")

    with pytest.raises(ConflictError):
        service.update_loan(loan["id"], status="requested", now=NOW)

    assert service.get_loan(loan["id"])["status"] == "cancelled"
    assert ledger.get(copy["id"])["state"] == "lost"


class StaleLoans:
    """Loan collection whose conditional writes always lose the race."""

    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def find_one_and_update(self, *args, **kwargs):
        return None


def test_reopen_gives_copy_back_when_loan_write_loses(service, ledger, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)
    service.update_loan(loan["id"], status="returned", now=NOW)
    service.loans = StaleLoans(service.loans)

    with pytest.raises(ConflictError):
        service.update_loan(loan["id"], status="approved", now=NOW)

    assert ledger.get(copy["id"])["state"] == "available"


def test_reject_releases_copy(service, ledger, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)

    result = service.apply_event(loan["id"], "reject", LIBRARIAN, now=NOW)

    assert result.loan["status"] == "rejected"
    assert ledger.get(copy["id"])["state"] == "available"


def test_return_event_requires_approval(service, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)

    with pytest.raises(ConflictError):
        service.apply_event(loan["id"], "return", LIBRARIAN, now=NOW)


def test_borrower_cancels_own_request(service, ledger, make_user, make_copy):
    user = make_user("1001")
    other = make_user("1002")
    copy = make_copy()
    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)

    with pytest.raises(PermissionDenied):
        service.apply_event(loan["id"], "cancel", Principal(id=other["id"], role=Role.USER), now=NOW)

    result = service.apply_event(loan["id"], "cancel", Principal(id=user["id"], role=Role.USER), now=NOW)
    assert result.loan["status"] == "cancelled"
    assert ledger.get(copy["id"])["state"] == "available"


def test_delete_leaves_copy_untouched(db, service, ledger, make_user, make_copy):
    make_user("1001")
    copy = make_copy()
    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)

    service.delete_loan(loan["id"])

    assert db["loan"].count_documents({}) == 0
    assert ledger.get(copy["id"])["state"] == "loaned"
    with pytest.raises(NotFoundError):
        service.delete_loan(loan["id"])
    entry = db["activity"].find_one({"type": "delete", "entity_id": loan["id"]})
    assert entry["description"] == f'Deleted loan "{loan["id"]}"'


def test_list_loans_joins_and_derives_overdue(db, service, make_user, make_copy, book):
    make_user("1001", full_name="Gabriel García")
    late_copy = make_copy()
    fresh_copy = make_copy()
    late = service.request_loan(late_copy["id"], "1001", NOW.date(), now=NOW)
    service.update_loan(late["id"], status="approved", now=NOW)
    fresh = service.request_loan(fresh_copy["id"], "1001", DUE.date(), now=NOW)
    db["loan"].update_one({"_id": ObjectId(late["id"])}, {"$set": {"created_at": NOW - timedelta(days=1)}})
    db["loan"].update_one({"_id": ObjectId(fresh["id"])}, {"$set": {"created_at": NOW}})

    later = NOW + timedelta(days=3)
    loans = service.list_loans(now=later)

    assert [l["id"] for l in loans] == [fresh["id"], late["id"]]
    assert loans[1]["is_overdue"] is True
    assert loans[1]["display_status"] == "overdue"
    assert loans[1]["status"] == "approved"
    assert loans[0]["book"]["title"] == book["title"]
    assert loans[0]["user"]["full_name"] == "Gabriel García"

    overdue = service.list_loans(status="overdue", now=later)
    assert [l["id"] for l in overdue] == [late["id"]]


def test_request_records_activity(db, service, make_user, make_copy):
    make_user("1001")
    copy = make_copy()

    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)

    entry = db["activity"].find_one({"entity": "loan", "entity_id": loan["id"]})
    assert entry["type"] == "create"


def test_activity_failure_does_not_break_request(service, ledger, make_user, make_copy, monkeypatch):
    make_user("1001")
    copy = make_copy()

    def broken_insert(*args, **kwargs):
        raise RuntimeError("activity store down")

    monkeypatch.setattr("activity.create_document", broken_insert)

    loan = service.request_loan(copy["id"], "1001", DUE.date(), now=NOW)
    assert loan["status"] == "requested"
    assert ledger.get(copy["id"])["state"] == "loaned"
