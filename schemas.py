"""
Database Schemas for the Startup Crowdfunding Platform

Each Pydantic model represents a MongoDB collection. Collection name is the lowercase
of the class name. Example: User -> "user"

Money is stored as integer minor units (1/100 of the currency unit) so that
running totals never drift.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Role(str, Enum):
    startup = "startup"
    investor = "investor"
    admin = "admin"


class FundingStage(str, Enum):
    pre_seed = "pre-seed"
    seed = "seed"
    series_a = "series-a"
    series_b = "series-b"
    series_c = "series-c"


class Visibility(str, Enum):
    all_investors = "all-investors"
    major_investors = "major-investors"


class PaymentMethod(str, Enum):
    wallet_transfer = "wallet-transfer"
    bank_transfer = "bank-transfer"


class TransactionStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class CollectionModel(BaseModel):
    # enums are stored as their plain string values
    model_config = ConfigDict(use_enum_values=True)


class User(CollectionModel):
    username: str = Field(..., description="Unique username")
    email: EmailStr = Field(..., description="Unique email address, lowercased")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Role = Field(..., description="user role: startup | investor | admin, fixed at registration")
    wallet_address: Optional[str] = Field(None, description="0x-prefixed wallet address")
    upi_id: Optional[str] = Field(None, description="Bank (UPI) payment identifier")
    upi_qr_code: Optional[str] = Field(None, description="Path of the uploaded UPI QR image")
    profile_image: Optional[str] = Field(None, description="Path of the uploaded profile picture")
    created_at: Optional[datetime] = None


class Startup(CollectionModel):
    # Collection: startup
    owner_user_id: str = Field(..., description="User id of the startup owner")
    name: str = Field(..., description="Startup name")
    description: str = Field(..., description="Short description")
    pitch: str = Field(..., description="Pitch text")
    stage: FundingStage = Field(..., description="Funding stage")
    funding_goal_minor: int = Field(..., gt=0, description="Funding goal in minor units")
    funds_raised_minor: int = Field(0, ge=0, description="Sum of completed transactions in minor units")
    settling_transactions: List[str] = Field(
        default_factory=list, description="Transaction ids counted in funds_raised_minor but not yet completed"
    )
    wallet_address: Optional[str] = Field(None, description="Wallet receiving wallet transfers")
    upi_id: Optional[str] = Field(None, description="UPI id receiving bank transfers")
    image: Optional[str] = Field(None, description="Path of the startup image")
    end_date: Optional[datetime] = Field(None, description="Campaign end date")
    created_at: Optional[datetime] = None


class Document(CollectionModel):
    # Collection: document
    startup_id: str = Field(..., description="Reference to Startup document id")
    name: str = Field(..., description="Document title")
    type: str = Field(..., description="File extension without the dot")
    path: str = Field(..., description="Public path of the stored file")
    size_in_mb: float = Field(..., ge=0, description="File size in megabytes")
    created_at: Optional[datetime] = None


class Update(CollectionModel):
    # Collection: update
    startup_id: str = Field(..., description="Reference to Startup document id")
    title: str = Field(..., description="Update title")
    content: str = Field(..., description="Update body")
    visibility: Visibility = Field(..., description="Which investors may read it")
    created_at: Optional[datetime] = None


class Transaction(CollectionModel):
    # Collection: transaction
    investor_id: str = Field(..., description="Investor user id")
    startup_id: str = Field(..., description="Reference to Startup document id")
    amount_minor: int = Field(..., gt=0, description="Amount in minor units, immutable")
    method: PaymentMethod = Field(..., description="Payment rail, immutable")
    status: TransactionStatus = Field(TransactionStatus.pending, description="pending | completed | failed")
    reference: Optional[str] = Field(None, description="On-chain transfer id or bank reference")
    needs_retry: bool = Field(False, description="Set when the funds increment failed after the row was written")
    settlement_claim: Optional[str] = Field(None, description="Token of the request currently settling this row")
    claim_expires: Optional[float] = Field(None, description="Unix time after which the settlement claim lapses")
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
