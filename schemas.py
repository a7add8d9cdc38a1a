"""
Database Schemas for the Library Loans API

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase class name.

Collections:
- Copy
- Loan
- User (owned by the user directory, read here)
- Activity
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CopyState(str, Enum):
    AVAILABLE = "available"
    LOANED = "loaned"
    DAMAGED = "damaged"
    LOST = "lost"


class LoanStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class Role(str, Enum):
    USER = "user"
    LIBRARIAN = "librarian"
    ADMIN = "admin"


STAFF_ROLES = frozenset({Role.ADMIN, Role.LIBRARIAN})


class Copy(BaseModel):
    """
    Copies collection schema
    Collection name: "copy"
    """
    model_config = ConfigDict(use_enum_values=True)

    book_id: str = Field(..., description="Book ObjectId as string")
    code: str = Field(..., min_length=1, max_length=50, description="Human readable code, unique")
    state: CopyState = Field(CopyState.AVAILABLE, description="available | loaned | damaged | lost")
    location: Optional[str] = Field(None, max_length=100, description="Shelf location")


class Loan(BaseModel):
    """
    Loans collection schema
    Collection name: "loan"
    """
    model_config = ConfigDict(use_enum_values=True)

    copy_id: str = Field(..., description="Copy ObjectId as string")
    book_id: str = Field(..., description="Book ObjectId as string, taken from the copy")
    user_id: str = Field(..., description="Borrower ObjectId as string")
    loan_date: datetime = Field(default_factory=datetime.utcnow)
    due_date: datetime = Field(..., description="Due date (UTC midnight)")
    return_date: Optional[datetime] = Field(None, description="Set only when returned")
    status: LoanStatus = Field(LoanStatus.REQUESTED)


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    model_config = ConfigDict(use_enum_values=True)

    document_number: str = Field(..., max_length=20, description="External identity document")
    full_name: str = Field(..., min_length=3, max_length=100)
    email: str = Field(..., description="Email address")
    role: Role = Field(Role.USER)
    active: bool = Field(True)


class Activity(BaseModel):
    """
    Activity log schema
    Collection name: "activity"
    """
    type: str = Field(..., description="create | update | delete | ...")
    entity: str = Field(..., description="Entity type, e.g. loan")
    entity_id: str
    description: str
