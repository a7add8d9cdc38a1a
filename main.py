import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.database import Database

import database
from auth import Principal, get_current_principal, require_staff
from config import configure_logging, settings
from database import ensure_indexes, get_db
from errors import LibraryError
from ledger import CopyLedger
from loans import LoanEvent, LoanService, UpdateResult, event_for_status
from schemas import CopyState, LoanStatus

configure_logging()
logger = logging.getLogger(__name__)


# Request Models
class LoanRequest(BaseModel):
    copy_id: Optional[str] = None
    document_number: Optional[str] = None
    due_date: Optional[date] = None


class UpdateLoan(BaseModel):
    due_date: Optional[date] = None
    loan_date: Optional[date] = None
    status: Optional[str] = None


class LoanStatusChange(BaseModel):
    status: str


class CreateCopy(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    state: CopyState = CopyState.AVAILABLE
    location: Optional[str] = Field(None, max_length=100)


class CopyStateChange(BaseModel):
    state: str


# Dependencies
def get_ledger(db: Database = Depends(get_db)) -> CopyLedger:
    return CopyLedger(db)


def get_loan_service(db: Database = Depends(get_db)) -> LoanService:
    return LoanService(db)


def _update_response(result: UpdateResult) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"loan": result.loan}
    if result.warning is not None:
        payload["warning"] = result.warning.message
    return payload


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except Exception:
            logger.exception("Could not create indexes")
    yield


app = FastAPI(title="Library Loans API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=int(exc.status_code), content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"detail": message})


@app.get("/")
def read_root():
    return {"message": "Library Loans API is running"}


@app.get("/api/health")
def health():
    if database.db is None:
        raise HTTPException(503, "Database not configured")
    try:
        database.db.command("ping")
    except Exception as e:
        logger.error("Database ping failed: %s", e)
        raise HTTPException(503, "Database unreachable")
    return {"status": "ok"}


# Loans Endpoints
@app.post("/api/loans/request", status_code=201)
def request_loan(payload: LoanRequest,
                 principal: Principal = Depends(get_current_principal),
                 service: LoanService = Depends(get_loan_service)):
    loan = service.request_loan(payload.copy_id, payload.document_number, payload.due_date, actor=principal)
    return {"loan": loan}


@app.get("/api/loans")
def list_loans(status: Optional[LoanStatus] = None,
               principal: Principal = Depends(require_staff),
               service: LoanService = Depends(get_loan_service)):
    return service.list_loans(status=status.value if status else None)


@app.get("/api/loans/my-loans")
def my_loans(principal: Principal = Depends(get_current_principal),
             service: LoanService = Depends(get_loan_service)):
    return service.list_user_loans(principal.id)


@app.put("/api/loans/{loan_id}")
def update_loan(loan_id: str, payload: UpdateLoan,
                principal: Principal = Depends(require_staff),
                service: LoanService = Depends(get_loan_service)):
    fields = payload.model_dump(exclude_unset=True)
    result = service.update_loan(
        loan_id,
        due_date=fields.get("due_date"),
        loan_date=fields.get("loan_date"),
        status=fields.get("status"),
    )
    return _update_response(result)


@app.put("/api/loans/{loan_id}/status")
def change_loan_status(loan_id: str, payload: LoanStatusChange,
                       principal: Principal = Depends(require_staff),
                       service: LoanService = Depends(get_loan_service)):
    event = event_for_status(payload.status)
    return _update_response(service.apply_event(loan_id, event, principal))


@app.put("/api/loans/{loan_id}/return")
def return_loan(loan_id: str,
                principal: Principal = Depends(require_staff),
                service: LoanService = Depends(get_loan_service)):
    return _update_response(service.apply_event(loan_id, LoanEvent.RETURN, principal))


@app.post("/api/loans/{loan_id}/cancel")
def cancel_loan(loan_id: str,
                principal: Principal = Depends(get_current_principal),
                service: LoanService = Depends(get_loan_service)):
    return _update_response(service.apply_event(loan_id, LoanEvent.CANCEL, principal))


@app.delete("/api/loans/{loan_id}")
def delete_loan(loan_id: str,
                principal: Principal = Depends(require_staff),
                service: LoanService = Depends(get_loan_service)):
    service.delete_loan(loan_id)
    return {"ok": True}


# Copies Endpoints
@app.get("/api/books/{book_id}/copies")
def list_copies(book_id: str, ledger: CopyLedger = Depends(get_ledger)):
    return ledger.list_by_book(book_id)


@app.post("/api/books/{book_id}/copies", status_code=201)
def create_copy(book_id: str, payload: CreateCopy,
                principal: Principal = Depends(require_staff),
                ledger: CopyLedger = Depends(get_ledger)):
    return ledger.create(book_id, payload.code, state=payload.state, location=payload.location)


@app.get("/api/copies/{copy_id}")
def get_copy(copy_id: str, ledger: CopyLedger = Depends(get_ledger)):
    return ledger.get(copy_id)


@app.patch("/api/copies/{copy_id}/state")
def change_copy_state(copy_id: str, payload: CopyStateChange,
                      principal: Principal = Depends(require_staff),
                      ledger: CopyLedger = Depends(get_ledger)):
    return ledger.set_state(copy_id, payload.state)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.port)
