from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

FilterOp = Literal["==", "!=", "<", "<=", ">", ">=", "in", "array_contains", "array_contains_any"]


class Direction(str, Enum):
    ASCENDING = "ASCENDING"
    DESCENDING = "DESCENDING"


class FieldFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    op: FilterOp
    value: Any


class OrderBy(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    direction: Direction = Direction.ASCENDING


class DocumentSnapshot(BaseModel):
    id: str
    path: str
    data: dict[str, Any]


class Query(BaseModel):
    model_config = ConfigDict(frozen=True)

    collection: str = Field(min_length=1)
    filters: tuple[FieldFilter, ...] = ()
    order_by: tuple[OrderBy, ...] = ()
    limit: int | None = Field(default=None, ge=1)
    start_after: DocumentSnapshot | None = None

    def where(self, field: str, op: FilterOp, value: Any) -> "Query":
        return self.model_copy(update={"filters": self.filters + (FieldFilter(field=field, op=op, value=value),)})

    def order(self, field: str, direction: Direction = Direction.ASCENDING) -> "Query":
        return self.model_copy(update={"order_by": self.order_by + (OrderBy(field=field, direction=direction),)})

    def limit_to(self, count: int) -> "Query":
        return self.model_copy(update={"limit": count})

    def after(self, doc: DocumentSnapshot) -> "Query":
        return self.model_copy(update={"start_after": doc})


class QuerySnapshot(BaseModel):
    docs: list[DocumentSnapshot] = Field(default_factory=list)
