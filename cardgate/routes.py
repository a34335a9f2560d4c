"""
HTTP routes: health, key-value CRUD, batch operations and card verification.

Backend error detail is logged here and never returned to callers.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from cardgate import __version__
from cardgate.cards import CardService, VerificationOutcome
from cardgate.config import get_settings
from cardgate.dependencies import get_card_service, get_kv_store
from cardgate.errors import (
    ConnectionFailedError,
    InvalidCardNumberError,
    KeyNotFoundError,
    StoreError,
)
from cardgate.kv import Deadline, KVStore, normalize_namespace
from cardgate.schemas import (
    BatchDeleteRequest,
    BatchOperationResult,
    BatchResponse,
    BatchSetRequest,
    HealthResponse,
    KVResponse,
    KVSetRequest,
    RootResponse,
)

logger = logging.getLogger(__name__)

root_router = APIRouter()
router = APIRouter()

VGUANG_SUCCESS_BODY = "code=0000"

_NOT_FOUND_OUTCOMES = {
    VerificationOutcome.DEVICE_UNKNOWN,
    VerificationOutcome.CARD_UNKNOWN,
}


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _deadline() -> Deadline:
    return Deadline.after(get_settings().request_timeout_seconds)


def _error(status_code: int, message: str, code: str) -> HTTPException:
    return HTTPException(
        status_code=status_code, detail={"message": message, "code": code}
    )


def _encode_value(value) -> bytes:
    # Strings are taken as already-encoded JSON.
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value).encode("utf-8")


@root_router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(
        status="healthy",
        environment=get_settings().environment,
        message="cardgate service is running",
        timestamp=_timestamp(),
    )


@root_router.get("/", response_model=RootResponse)
def root(store: KVStore = Depends(get_kv_store)):
    return RootResponse(
        service="cardgate", version=__version__, backend=store.backend_name
    )


@router.post("/kv/batch", response_model=BatchResponse)
def batch_set(payload: BatchSetRequest, store: KVStore = Depends(get_kv_store)):
    """Apply each set independently; failures do not roll back earlier writes."""
    if not payload.operations:
        raise _error(400, "at least one operation is required", "EMPTY_OPERATIONS")

    deadline = _deadline()
    results: list[BatchOperationResult] = []
    for op in payload.operations:
        result = BatchOperationResult(
            namespace=op.namespace, collection=op.collection, key=op.key
        )
        if not (op.namespace and op.collection and op.key):
            result.error = "namespace, collection, and key are required"
        else:
            try:
                store.set(
                    normalize_namespace(op.namespace),
                    op.collection,
                    op.key,
                    _encode_value(op.value),
                    deadline=deadline,
                )
                result.success = True
            except (StoreError, TypeError, ValueError) as exc:
                logger.warning(
                    "Batch set failed for %s/%s/%s: %s",
                    op.namespace,
                    op.collection,
                    op.key,
                    exc,
                )
                result.error = "failed to set key"
        results.append(result)

    success_count = sum(1 for r in results if r.success)
    return BatchResponse(
        message="Batch set completed",
        results=results,
        success_count=success_count,
        failure_count=len(results) - success_count,
        timestamp=_timestamp(),
    )


@router.delete("/kv/batch", response_model=BatchResponse)
def batch_delete(
    payload: BatchDeleteRequest, store: KVStore = Depends(get_kv_store)
):
    if not payload.operations:
        raise _error(400, "at least one operation is required", "EMPTY_OPERATIONS")

    deadline = _deadline()
    results: list[BatchOperationResult] = []
    for op in payload.operations:
        result = BatchOperationResult(
            namespace=op.namespace, collection=op.collection, key=op.key
        )
        if not (op.namespace and op.collection and op.key):
            result.error = "namespace, collection, and key are required"
        else:
            try:
                store.delete(
                    normalize_namespace(op.namespace),
                    op.collection,
                    op.key,
                    deadline=deadline,
                )
                result.success = True
            except KeyNotFoundError:
                result.error = "key not found"
            except StoreError as exc:
                logger.warning(
                    "Batch delete failed for %s/%s/%s: %s",
                    op.namespace,
                    op.collection,
                    op.key,
                    exc,
                )
                result.error = "failed to delete key"
        results.append(result)

    success_count = sum(1 for r in results if r.success)
    return BatchResponse(
        message="Batch delete completed",
        results=results,
        success_count=success_count,
        failure_count=len(results) - success_count,
        timestamp=_timestamp(),
    )


@router.get("/kv/{namespace}/{collection}/{key}", response_model=KVResponse)
def get_kv(
    namespace: str,
    collection: str,
    key: str,
    store: KVStore = Depends(get_kv_store),
):
    namespace = normalize_namespace(namespace)
    try:
        raw = store.get(namespace, collection, key, deadline=_deadline())
    except KeyNotFoundError:
        raise _error(404, "key not found", "KEY_NOT_FOUND")
    except StoreError:
        logger.exception("Failed to get %s/%s/%s", namespace, collection, key)
        raise _error(500, "failed to retrieve key", "INTERNAL_ERROR")

    try:
        value = json.loads(raw)
    except ValueError:
        raise _error(500, "failed to decode value", "DECODE_ERROR")

    return KVResponse(
        message="Successfully",
        namespace=namespace,
        collection=collection,
        key=key,
        value=value,
        timestamp=_timestamp(),
    )


@router.post(
    "/kv/{namespace}/{collection}/{key}",
    response_model=KVResponse,
    status_code=201,
)
def set_kv(
    namespace: str,
    collection: str,
    key: str,
    payload: KVSetRequest,
    store: KVStore = Depends(get_kv_store),
):
    namespace = normalize_namespace(namespace)
    try:
        value = _encode_value(payload.value)
    except (TypeError, ValueError):
        raise _error(400, "failed to encode value", "ENCODE_ERROR")

    try:
        store.set(namespace, collection, key, value, deadline=_deadline())
    except StoreError:
        logger.exception("Failed to set %s/%s/%s", namespace, collection, key)
        raise _error(500, "failed to set key", "INTERNAL_ERROR")

    return KVResponse(
        message="Successfully",
        namespace=namespace,
        collection=collection,
        key=key,
        value=payload.value,
        timestamp=_timestamp(),
    )


@router.delete("/kv/{namespace}/{collection}/{key}", response_model=KVResponse)
def delete_kv(
    namespace: str,
    collection: str,
    key: str,
    store: KVStore = Depends(get_kv_store),
):
    namespace = normalize_namespace(namespace)
    try:
        store.delete(namespace, collection, key, deadline=_deadline())
    except KeyNotFoundError:
        raise _error(404, "key not found", "KEY_NOT_FOUND")
    except StoreError:
        logger.exception("Failed to delete %s/%s/%s", namespace, collection, key)
        raise _error(500, "failed to delete key", "INTERNAL_ERROR")

    return KVResponse(
        message="Successfully",
        namespace=namespace,
        collection=collection,
        key=key,
        timestamp=_timestamp(),
    )


@router.head("/kv/{namespace}/{collection}/{key}")
def head_kv(
    namespace: str,
    collection: str,
    key: str,
    store: KVStore = Depends(get_kv_store),
):
    namespace = normalize_namespace(namespace)
    try:
        found = store.exists(namespace, collection, key, deadline=_deadline())
    except StoreError:
        logger.exception("Failed to check %s/%s/%s", namespace, collection, key)
        return Response(status_code=500)
    return Response(status_code=200 if found else 404)


def _outcome_status(outcome: VerificationOutcome) -> int:
    if outcome.authorized:
        return 204
    if outcome in _NOT_FOUND_OUTCOMES:
        return 404
    return 403


@router.post("/namespaces/{namespace}")
async def verify_card(
    namespace: str,
    request: Request,
    x_device_sn: str | None = Header(default=None),
    service: CardService = Depends(get_card_service),
):
    """
    Standard verification: device serial in ``X-Device-SN``, card number as
    the plain-text body. Responds with a status code only.
    """
    if not x_device_sn:
        logger.info("[%s] Missing X-Device-SN header", namespace)
        return Response(status_code=400)

    raw = await request.body()
    try:
        outcome = await run_in_threadpool(
            service.verify, namespace, x_device_sn, raw, deadline=_deadline()
        )
    except InvalidCardNumberError:
        logger.info("[%s] Empty card number from device %s", namespace, x_device_sn)
        return Response(status_code=400)
    except ConnectionFailedError:
        logger.exception("[%s] Storage unavailable during verification", namespace)
        return Response(status_code=503)
    except StoreError:
        logger.exception("[%s] Verification failed", namespace)
        return Response(status_code=500)

    return Response(status_code=_outcome_status(outcome))


@router.post("/namespaces/{namespace}/device/{device_name}/vguang")
async def verify_card_vguang(
    namespace: str,
    device_name: str,
    request: Request,
    service: CardService = Depends(get_card_service),
):
    """
    vguang-m350 compatible verification. The reader only understands
    ``code=0000`` with 200; every other result is a bare 404.
    """
    raw = await request.body()
    try:
        outcome = await run_in_threadpool(
            service.verify, namespace, device_name, raw, deadline=_deadline()
        )
    except InvalidCardNumberError:
        logger.info("[%s] Empty card number from vguang %s", namespace, device_name)
        return Response(status_code=404)
    except StoreError:
        logger.exception("[%s] vguang verification failed", namespace)
        return Response(status_code=404)

    if not outcome.authorized:
        return Response(status_code=404)
    return PlainTextResponse(VGUANG_SUCCESS_BODY, status_code=200)
