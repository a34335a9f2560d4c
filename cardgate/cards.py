"""
Card verification: record lookup plus the access decision.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

from pymongo import MongoClient

from cardgate.card_numbers import derive_card_number
from cardgate.errors import InvalidCardNumberError, KeyNotFoundError, StoreError
from cardgate.kv import Deadline, KVStore, normalize_namespace
from cardgate.models import Card, Device
from cardgate.mongo_store import mongo_operation

logger = logging.getLogger(__name__)

CARDS_COLLECTION = "cards"
DEVICES_COLLECTION = "devices"


class VerificationOutcome(Enum):
    AUTHORIZED = "authorized"
    DEVICE_UNKNOWN = "device_unknown"
    CARD_UNKNOWN = "card_unknown"
    DEVICE_INACTIVE = "device_inactive"
    CARD_NOT_YET_VALID = "card_not_yet_valid"
    CARD_EXPIRED = "card_expired"
    CARD_NOT_AUTHORIZED_FOR_DEVICE = "card_not_authorized_for_device"

    @property
    def authorized(self) -> bool:
        return self is VerificationOutcome.AUTHORIZED


class CardRepository(Protocol):
    """Read access to device and card records within a namespace."""

    def get_device(
        self, namespace: str, sn: str, *, deadline: Optional[Deadline] = None
    ) -> Optional[Device]:
        ...

    def get_card(
        self, namespace: str, number: str, *, deadline: Optional[Deadline] = None
    ) -> Optional[Card]:
        ...


def _decode_record(factory, data, collection: str, key: str):
    """Build a record, reporting malformed stored data as a StoreError."""
    if not data:
        return None
    try:
        return factory(data)
    except (ValueError, TypeError, AttributeError) as err:
        raise StoreError(f"malformed {collection} record for {key}: {err}") from err


class MongoCardRepository:
    """Reads the ``devices`` and ``cards`` collections of the namespace database."""

    def __init__(self, client: MongoClient):
        self.client = client

    def _find_one(
        self,
        namespace: str,
        collection: str,
        query: dict,
        deadline: Optional[Deadline],
    ) -> Optional[Mapping[str, Any]]:
        coll = self.client.get_database(
            normalize_namespace(namespace)
        ).get_collection(collection)
        with mongo_operation(deadline):
            return coll.find_one(query)

    def get_device(self, namespace, sn, *, deadline=None) -> Optional[Device]:
        doc = self._find_one(namespace, DEVICES_COLLECTION, {"sn": sn}, deadline)
        return _decode_record(Device.from_dict, doc, DEVICES_COLLECTION, sn)

    def get_card(self, namespace, number, *, deadline=None) -> Optional[Card]:
        doc = self._find_one(
            namespace, CARDS_COLLECTION, {"number": number}, deadline
        )
        return _decode_record(Card.from_dict, doc, CARDS_COLLECTION, number)


class KVCardRepository:
    """
    Reads JSON card/device records through any KV backend.

    Devices are keyed by serial number and cards by canonical number.
    """

    def __init__(self, store: KVStore):
        self.store = store

    def _load(
        self,
        namespace: str,
        collection: str,
        key: str,
        deadline: Optional[Deadline],
    ) -> Optional[dict]:
        try:
            raw = self.store.get(namespace, collection, key, deadline=deadline)
        except KeyNotFoundError:
            return None
        try:
            return json.loads(raw)
        except ValueError as err:
            raise StoreError(
                f"malformed {collection} record for {key}: {err}"
            ) from err

    def get_device(self, namespace, sn, *, deadline=None) -> Optional[Device]:
        data = self._load(namespace, DEVICES_COLLECTION, sn, deadline)
        return _decode_record(Device.from_dict, data, DEVICES_COLLECTION, sn)

    def get_card(self, namespace, number, *, deadline=None) -> Optional[Card]:
        data = self._load(namespace, CARDS_COLLECTION, number, deadline)
        return _decode_record(Card.from_dict, data, CARDS_COLLECTION, number)


class CardService:
    """Decides whether a presented card opens a given device."""

    def __init__(self, repository: CardRepository):
        self.repository = repository

    def verify(
        self,
        namespace: str,
        device_sn: str,
        raw_card: bytes,
        *,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> VerificationOutcome:
        """
        Run the verification steps, stopping at the first negative result.

        Raises ``InvalidCardNumberError`` before any lookup when the payload
        yields no card number. Backend failures propagate as ``StoreError``.
        """
        namespace = normalize_namespace(namespace)
        card_number = derive_card_number(raw_card)
        if not card_number:
            raise InvalidCardNumberError("empty card number")

        device = self.repository.get_device(namespace, device_sn, deadline=deadline)
        if device is None:
            return self._deny(
                VerificationOutcome.DEVICE_UNKNOWN, namespace, device_sn, card_number
            )
        if not device.is_active:
            return self._deny(
                VerificationOutcome.DEVICE_INACTIVE,
                namespace,
                device_sn,
                card_number,
                f"status={device.status!r}",
            )

        card = self.repository.get_card(namespace, card_number, deadline=deadline)
        if card is None:
            return self._deny(
                VerificationOutcome.CARD_UNKNOWN, namespace, device_sn, card_number
            )

        now = now or datetime.now(timezone.utc)
        if not card.is_valid(now):
            outcome = (
                VerificationOutcome.CARD_NOT_YET_VALID
                if card.is_not_yet_valid(now)
                else VerificationOutcome.CARD_EXPIRED
            )
            return self._deny(
                outcome,
                namespace,
                device_sn,
                card_number,
                f"effective_at={card.effective_at.isoformat()} "
                f"invalid_at={card.invalid_at.isoformat()} now={now.isoformat()}",
            )

        if not (
            card.has_device(device.sn)
            or (device.device_id and card.has_device(device.device_id))
        ):
            return self._deny(
                VerificationOutcome.CARD_NOT_AUTHORIZED_FOR_DEVICE,
                namespace,
                device_sn,
                card_number,
                f"device_id={device.device_id!r} authorized={card.devices}",
            )

        logger.info(
            "[%s] Card %s authorized for device %s", namespace, card_number, device_sn
        )
        return VerificationOutcome.AUTHORIZED

    @staticmethod
    def _deny(
        outcome: VerificationOutcome,
        namespace: str,
        device_sn: str,
        card_number: str,
        detail: str = "",
    ) -> VerificationOutcome:
        logger.info(
            "[%s] Card %s denied for device %s: %s %s",
            namespace,
            card_number,
            device_sn,
            outcome.value,
            detail,
        )
        return outcome
