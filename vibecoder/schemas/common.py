from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    """Wire format is camelCase; python side stays snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    message: str
    data: T


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


def paginate(page: int, limit: int, total: int) -> Pagination:
    return Pagination(
        page=page, limit=limit, total=total, total_pages=(total + limit - 1) // limit
    )
