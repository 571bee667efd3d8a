"""
Owner identity variants.

An order belongs either to an authenticated account or to a guest
pseudo-identity minted at checkout. Both serialise to the single
``owner_id`` column; the guest form carries a reserved prefix.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Union

from config import Config
from services.exceptions import InvalidArgumentError
from utils.datetime_helpers import epoch_millis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuestIdentity:
    """Anonymous checkout identity; ``token`` is everything after the prefix"""
    token: str

    @property
    def owner_id(self) -> str:
        return f"{Config.GUEST_ID_PREFIX}{self.token}"

    @property
    def is_guest(self) -> bool:
        return True

    def __str__(self) -> str:
        return self.owner_id


@dataclass(frozen=True)
class AccountIdentity:
    """Authenticated account identity"""
    account_id: str

    @property
    def owner_id(self) -> str:
        return self.account_id

    @property
    def is_guest(self) -> bool:
        return False

    def __str__(self) -> str:
        return self.account_id


OwnerIdentity = Union[GuestIdentity, AccountIdentity]


def _normalise(raw: Optional[str], field: str) -> str:
    if raw is None or not isinstance(raw, str) or not raw.strip():
        raise InvalidArgumentError(f"{field} is required", field=field)
    return raw.strip()


def is_guest_owner_id(raw: Optional[str]) -> bool:
    return isinstance(raw, str) and raw.strip().startswith(Config.GUEST_ID_PREFIX)


def parse_guest_id(raw: Optional[str]) -> GuestIdentity:
    """Parse a guest pseudo-id, rejecting anything without the reserved prefix"""
    value = _normalise(raw, "guest_id")
    if not value.startswith(Config.GUEST_ID_PREFIX):
        raise InvalidArgumentError(
            f"Invalid guest id format: expected prefix '{Config.GUEST_ID_PREFIX}'",
            field="guest_id",
            value=value,
        )
    token = value[len(Config.GUEST_ID_PREFIX):]
    if not token:
        raise InvalidArgumentError("Guest id token is empty", field="guest_id", value=value)
    return GuestIdentity(token=token)


def parse_account_id(raw: Optional[str]) -> AccountIdentity:
    """Parse an authenticated account id; guest pseudo-ids are rejected"""
    value = _normalise(raw, "account_id")
    if value.startswith(Config.GUEST_ID_PREFIX):
        raise InvalidArgumentError(
            "A guest id cannot be used as an authenticated account id",
            field="account_id",
            value=value,
        )
    return AccountIdentity(account_id=value)


def parse_owner_id(raw: Optional[str]) -> OwnerIdentity:
    """Map a stored owner id back to its identity variant"""
    value = _normalise(raw, "owner_id")
    if value.startswith(Config.GUEST_ID_PREFIX):
        return parse_guest_id(value)
    return AccountIdentity(account_id=value)


def coerce_owner(owner: Union[str, OwnerIdentity]) -> OwnerIdentity:
    if isinstance(owner, (GuestIdentity, AccountIdentity)):
        return owner
    return parse_owner_id(owner)


def new_guest_identity() -> GuestIdentity:
    """Mint a fresh guest identity: ``guest_<epoch-ms>_<8 hex>``"""
    identity = GuestIdentity(token=f"{epoch_millis()}_{secrets.token_hex(4)}")
    logger.debug(f"👤 GUEST_IDENTITY_CREATED: {identity.owner_id}")
    return identity
