"""
Shared query parameter dependencies.
"""

from datetime import datetime
from typing import Optional

from fastapi import Query
from pydantic import ValidationError as PydanticValidationError

from fiatmint.app.core.exceptions import ValidationError
from fiatmint.app.schemas.ledger import Pagination, DateRange


def pagination_params(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> Pagination:
    return Pagination(page=page, limit=limit)


def date_range_params(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
) -> DateRange:
    try:
        return DateRange(start_date=start_date, end_date=end_date)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid date range", details={"errors": exc.errors(include_url=False, include_context=False)})
