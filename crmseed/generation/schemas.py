from __future__ import annotations

from datetime import date, datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


class RecordValidationError(ValueError):
    retryable = False


class _ObjectFields(BaseModel):
    # Generated content may carry extra standard fields; they are passed through untouched.
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class AccountFields(_ObjectFields):
    Name: str = Field(min_length=1)
    Industry: str | None = None
    Type: str | None = None
    Website: str | None = None
    AnnualRevenue: float | None = Field(default=None, ge=0)
    NumberOfEmployees: int | None = Field(default=None, ge=0)


class ContactFields(_ObjectFields):
    LastName: str = Field(min_length=1)
    FirstName: str | None = None
    Email: str | None = None
    Title: str | None = None
    Phone: str | None = None
    AccountId_localId: str | None = None


class OpportunityFields(_ObjectFields):
    Name: str = Field(min_length=1)
    StageName: str = Field(min_length=1)
    CloseDate: date
    Amount: float | None = Field(default=None, ge=0)
    Probability: float | None = Field(default=None, ge=0, le=100)
    AccountId_localId: str | None = None


class TaskFields(_ObjectFields):
    Subject: str = Field(min_length=1)
    ActivityDate: date | None = None
    Status: str | None = None
    Priority: str | None = None
    Description: str | None = None
    WhoId_localId: str | None = None
    WhatId_localId: str | None = None


class EventFields(_ObjectFields):
    Subject: str = Field(min_length=1)
    StartDateTime: datetime
    EndDateTime: datetime
    Description: str | None = None
    WhoId_localId: str | None = None
    WhatId_localId: str | None = None

    @model_validator(mode="after")
    def _end_after_start(self) -> "EventFields":
        if self.EndDateTime < self.StartDateTime:
            raise ValueError("EndDateTime must not precede StartDateTime")
        return self


class EmailMessageFields(_ObjectFields):
    Subject: str = Field(min_length=1)
    TextBody: str | None = None
    MessageDate: datetime | None = None
    FromAddress: str | None = None
    ToAddress: str | None = None
    Incoming: bool | None = None
    RelatedToId_localId: str | None = None


OBJECT_SCHEMAS: dict[str, type[_ObjectFields]] = {
    "Account": AccountFields,
    "Contact": ContactFields,
    "Opportunity": OpportunityFields,
    "Task": TaskFields,
    "Event": EventFields,
    "EmailMessage": EmailMessageFields,
}


def validate_fields(object_type: str, fields: Mapping[str, Any]) -> dict[str, Any]:
    schema = OBJECT_SCHEMAS.get(object_type)
    if schema is None:
        raise RecordValidationError(f"Unsupported object type: {object_type}")
    try:
        model = schema.model_validate(dict(fields))
    except ValidationError as exc:
        raise RecordValidationError(f"Invalid {object_type} fields: {exc}") from exc
    return model.model_dump(mode="json", exclude_none=True)
