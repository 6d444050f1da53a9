"""
Governance vote schemas.
"""

from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field, field_validator, model_validator

from fiatmint.app.db.session import ensure_utc


class VoteCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    start_at: datetime
    end_at: datetime
    options: List[str] = Field(..., min_length=2)

    @field_validator("start_at", "end_at")
    @classmethod
    def assume_utc(cls, value):
        return ensure_utc(value)

    @model_validator(mode="after")
    def check_window_and_options(self):
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        labels = [label.strip() for label in self.options]
        if any(not label for label in labels):
            raise ValueError("Option labels must not be empty")
        if len(set(labels)) != len(labels):
            raise ValueError("Option labels must be distinct")
        return self


class VoteUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    active: Optional[bool] = None

    @field_validator("start_at", "end_at")
    @classmethod
    def assume_utc(cls, value):
        return ensure_utc(value)


class VoteOptionCreate(BaseModel):
    label: str = Field(..., min_length=1, max_length=255)


class VoteOptionResponse(BaseModel):
    id: str
    label: str

    class Config:
        from_attributes = True


class VoteResponse(BaseModel):
    id: str
    title: str
    description: Optional[str]
    start_at: datetime
    end_at: datetime
    active: bool
    status: str
    options: List[VoteOptionResponse]


class BallotCreate(BaseModel):
    option_id: str = Field(..., min_length=1, max_length=36)


class BallotResponse(BaseModel):
    id: str
    vote_id: str
    option_id: str
    user_id: str
    cast_at: datetime

    class Config:
        from_attributes = True


class OptionResult(BaseModel):
    option_id: str
    label: str
    votes: int
    percentage: float


class VoteResults(BaseModel):
    vote_id: str
    title: str
    status: str
    total_votes: int
    results: List[OptionResult]
