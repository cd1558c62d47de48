"""Transient result containers returned by workflow operations."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from math import ceil
from typing import Any, Dict, List, Optional

from claimflow.utils.helpers import isoformat, utcnow


@dataclass
class BatchError:
    row_index: int
    record_id: Optional[str]
    field: Optional[str]
    message: str
    original_value: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "row_index": self.row_index,
            "record_id": self.record_id,
            "field": self.field,
            "message": self.message,
            "original_value": self.original_value,
        }


@dataclass
class BatchResult:
    total_count: int = 0
    operation_type: Optional[str] = None
    operation_time: datetime = field(default_factory=utcnow)
    success_ids: List[str] = field(default_factory=list)
    failure_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    detail_errors: List[BatchError] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.success_ids)

    @property
    def failure_count(self) -> int:
        return len(self.failure_ids)

    @property
    def all_success(self) -> bool:
        return self.failure_count == 0 and self.success_count > 0

    @property
    def success_rate(self) -> float:
        if not self.total_count:
            return 0.0
        return self.success_count / self.total_count * 100

    def has_errors(self) -> bool:
        return self.failure_count > 0

    def add_success(self, record_id: str) -> None:
        self.success_ids.append(record_id)

    def add_failure(
        self,
        record_id: Optional[str],
        message: str,
        *,
        row_index: int = 0,
        field_name: Optional[str] = None,
        original_value: Optional[str] = None,
    ) -> None:
        self.failure_ids.append(record_id)
        self.errors.append(message)
        self.detail_errors.append(BatchError(row_index, record_id, field_name, message, original_value))

    def to_dict(self) -> dict:
        return {
            "total_count": self.total_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "all_success": self.all_success,
            "success_rate": self.success_rate,
            "operation_type": self.operation_type,
            "operation_time": isoformat(self.operation_time),
            "success_ids": list(self.success_ids),
            "failure_ids": list(self.failure_ids),
            "errors": list(self.errors),
            "detail_errors": [error.to_dict() for error in self.detail_errors],
        }


@dataclass
class Page:
    items: List[Dict[str, Any]]
    page: int
    per_page: int
    total: int

    @classmethod
    def empty(cls, page: int = 1, per_page: int = 20) -> "Page":
        return cls(items=[], page=page, per_page=per_page, total=0)

    @property
    def pages(self) -> int:
        return max(1, ceil(self.total / self.per_page)) if self.total and self.per_page else 1

    def to_dict(self) -> dict:
        return {
            "items": self.items,
            "page": self.page,
            "per_page": self.per_page,
            "total": self.total,
            "pages": self.pages,
            "has_prev": self.page > 1,
            "has_next": self.page < self.pages,
        }
