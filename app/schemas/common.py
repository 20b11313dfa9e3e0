from math import ceil
from typing import Any, Optional

from pydantic import BaseModel


class PaginationMeta(BaseModel):
    total: int
    page: int
    per_page: int
    last_page: int

    @classmethod
    def build(cls, total: int, page: int, per_page: int) -> "PaginationMeta":
        return cls(
            total=total,
            page=page,
            per_page=per_page,
            last_page=max(1, ceil(total / per_page)) if per_page else 1,
        )


def envelope(data: Any = None, meta: Any = None, message: Optional[str] = None) -> dict:
    body = {"success": True, "data": data}
    if meta is not None:
        body["meta"] = meta.model_dump() if isinstance(meta, BaseModel) else meta
    if message is not None:
        body["message"] = message
    return body
