"""
Pydantic schemas for the HTTP API.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

MAX_BATCH_OPERATIONS = 1000


class KVSetRequest(BaseModel):
    value: Any = Field(...)


class KVResponse(BaseModel):
    message: str
    namespace: str
    collection: str
    key: str
    value: Any = None
    timestamp: str


class ErrorResponse(BaseModel):
    message: str
    code: str


class BatchSetOperation(BaseModel):
    namespace: str = ""
    collection: str = ""
    key: str = ""
    value: Any = None


class BatchSetRequest(BaseModel):
    operations: list[BatchSetOperation] = Field(
        ..., max_length=MAX_BATCH_OPERATIONS
    )


class BatchDeleteOperation(BaseModel):
    namespace: str = ""
    collection: str = ""
    key: str = ""


class BatchDeleteRequest(BaseModel):
    operations: list[BatchDeleteOperation] = Field(
        ..., max_length=MAX_BATCH_OPERATIONS
    )


class BatchOperationResult(BaseModel):
    namespace: str
    collection: str
    key: str
    success: bool = False
    error: Optional[str] = None


class BatchResponse(BaseModel):
    message: str
    results: list[BatchOperationResult]
    success_count: int
    failure_count: int
    timestamp: str


class HealthResponse(BaseModel):
    status: str
    environment: str
    message: str
    timestamp: str


class RootResponse(BaseModel):
    service: str
    version: str
    backend: str
