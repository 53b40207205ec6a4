"""
Database Schemas for the Financial Institution Reviews site

MongoDB collections are defined below using Pydantic models. Each class maps
to one collection:
- user: accounts (user, admin) with approval state
- institution: financial institutions and their rating aggregate
- review: one rating/review per user per institution
- category: discussion categories
- thread: discussion threads and their comment count
- comment: thread comments and their helpful count
- helpful: one "helpful" vote per user per comment

References between documents are stored as string ids.
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["admin", "user"]
InstitutionType = Literal["bank", "securities", "insurance", "credit_union", "other"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Account(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of password")
    role: Role = Field("user")
    isApproved: bool = False
    approvalEvidenceRef: Optional[str] = None
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)


class FinancialInstitution(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: InstitutionType
    description: str = Field(..., max_length=1000)
    location: str
    website: Optional[str] = None
    logo: str = "no-photo.jpg"
    avgRating: float = 0
    reviewCount: int = 0
    createdAt: datetime = Field(default_factory=utcnow)


class Review(BaseModel):
    institution_id: str = Field(...)
    user_id: str = Field(...)
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=100)
    text: str = Field(..., min_length=1, max_length=1000)
    createdAt: datetime = Field(default_factory=utcnow)


class Category(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: str = Field(..., max_length=500)
    slug: str
    createdAt: datetime = Field(default_factory=utcnow)


class Thread(BaseModel):
    category_id: str = Field(...)
    user_id: str = Field(...)
    title: str = Field(..., min_length=1, max_length=200)
    commentCount: int = 0
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)


class Comment(BaseModel):
    thread_id: str = Field(...)
    user_id: str = Field(...)
    content: str = Field(..., min_length=1, max_length=1000)
    helpfulCount: int = 0
    createdAt: datetime = Field(default_factory=utcnow)


class Helpful(BaseModel):
    comment_id: str
    user_id: str
    createdAt: datetime = Field(default_factory=utcnow)
