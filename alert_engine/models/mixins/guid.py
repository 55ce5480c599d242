"""
Public identifiers for alerts and delivery jobs.

Rows keep an integer primary key for joins and a UUIDv7 (time-ordered) for
the outside world. The UUID is rendered as ``{prefix}_{26 Crockford base32
chars}``:

    alr_01jaa2m8r4f5k3t6w0x9y7z1bc   Alert
    dlv_01jaa2m8r9q2n4p6r8s0t2v4wx   DeliveryJob

A delivery job's GUID doubles as the idempotency key handed to the mail
transport, so it must never change for the lifetime of the job.
"""

import uuid as uuid_module
from typing import ClassVar, Optional, Type, TypeVar

import base32_crockford
from sqlalchemy import Column
from sqlalchemy.orm import Session
from uuid_extensions import uuid7

from alert_engine.models.types import UUIDColumn


GUID_BODY_LENGTH = 26

T = TypeVar("T", bound="GuidMixin")


def encode_guid(prefix: str, value: uuid_module.UUID) -> str:
    body = base32_crockford.encode(value.int).zfill(GUID_BODY_LENGTH)
    return f"{prefix}_{body.lower()}"


def decode_guid(prefix: str, guid: str) -> uuid_module.UUID:
    """
    Decode a prefixed GUID.

    Raises:
        ValueError: On a wrong prefix, wrong length, or invalid characters
    """
    head, sep, body = (guid or "").partition("_")
    if not sep or head.lower() != prefix:
        raise ValueError(f"Expected a '{prefix}_' identifier, got '{guid}'")
    if len(body) != GUID_BODY_LENGTH:
        raise ValueError(
            f"Identifier body must be {GUID_BODY_LENGTH} characters, got {len(body)}"
        )
    try:
        return uuid_module.UUID(int=base32_crockford.decode(body.upper()))
    except ValueError as e:
        raise ValueError(f"Invalid identifier encoding: {e}")


class GuidMixin:
    """
    Adds a ``uuid`` column and the prefixed ``guid`` rendering of it.

    Subclasses set GUID_PREFIX.
    """

    GUID_PREFIX: ClassVar[str]

    uuid = Column(UUIDColumn, nullable=False, unique=True, index=True, default=uuid7)

    @property
    def guid(self) -> Optional[str]:
        if self.uuid is None:
            return None
        return encode_guid(self.GUID_PREFIX, self.uuid)

    @classmethod
    def parse_guid(cls, guid: str) -> uuid_module.UUID:
        return decode_guid(cls.GUID_PREFIX, guid)

    @classmethod
    def find_by_guid(cls: Type[T], db: Session, guid: str) -> Optional[T]:
        """
        Look a row up by GUID.

        Raises:
            ValueError: If the GUID is malformed
        """
        return db.query(cls).filter(cls.uuid == cls.parse_guid(guid)).first()
