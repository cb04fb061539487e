"""
Database Schemas for the Smart Irrigation marketplace (MongoDB collections)

Each document model maps to a collection named after the model, lowercased:
- User -> "user"
- Proposal -> "proposal"
- WaterUsage -> "waterusage"

The *In / *Body models describe request payloads. Required fields are
declared Optional there so handlers can report every missing field at once.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, confloat, conint

Role = Literal["farmer", "provider", "manufacturer"]
ProposalStatus = Literal["active", "completed", "cancelled"]
UsageStatus = Literal["Optimal", "High", "Low"]

# ints keep their JSON shape; floats must be finite so responses stay encodable
Number = Union[int, confloat(allow_inf_nan=False)]
NonNegativeNumber = Union[conint(ge=0), confloat(ge=0, allow_inf_nan=False)]

ROLES = ("farmer", "provider", "manufacturer")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    name: str
    email: str
    password: str  # bcrypt hash, never returned to clients
    role: Role = "farmer"
    location: Optional[str] = None
    cropType: Optional[str] = None
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)


class Proposal(BaseModel):
    title: str
    description: Optional[str] = None
    price: NonNegativeNumber
    targetCrops: List[str] = []
    proposer: str  # owning user id
    status: ProposalStatus = "active"
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)


class WaterUsage(BaseModel):
    field: str
    litersUsed: Number
    status: UsageStatus = "Optimal"
    userId: Optional[str] = None
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)


# ------------------------- Request bodies -------------------------

class RegisterBody(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    location: Optional[str] = None
    cropType: Optional[str] = None


class LoginBody(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ProposalIn(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Number] = None
    targetCrops: Optional[List[str]] = None


class WaterUsageIn(BaseModel):
    field: Optional[str] = None
    litersUsed: Optional[Number] = None
    status: Optional[UsageStatus] = None
