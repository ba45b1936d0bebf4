"""Shared pydantic base for request and response bodies.

Fields are snake_case in Python and camelCase on the wire. Stored datetimes
are naive UTC; ``UtcDatetime`` marks them as UTC on the way out.
"""

from datetime import datetime
from typing import Annotated

from pydantic import AfterValidator, BaseModel
from pydantic.alias_generators import to_camel

from coachdesk.core.timeutils import as_utc

UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True
