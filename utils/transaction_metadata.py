"""
Tagged ledger metadata.

Each transaction type accepts exactly one metadata variant. The variant is
stored in ``WalletTransaction.extra_data`` with a ``kind`` tag so it can be
rebuilt on read.
"""

from dataclasses import asdict, dataclass, fields
from decimal import Decimal
from typing import Any, Dict, Optional, Type, Union

from models import WalletTransactionType
from services.exceptions import InvalidArgumentError
from utils.decimal_precision import MonetaryDecimal


@dataclass(frozen=True)
class InvestmentMetadata:
    """Trade details for INVESTMENT_BUY / INVESTMENT_SELL"""
    symbol: str
    quantity: Decimal
    price: Decimal
    asset_name: Optional[str] = None
    kind: str = "investment"

    def __post_init__(self):
        if not self.symbol or not str(self.symbol).strip():
            raise InvalidArgumentError("Investment metadata requires a symbol", field="metadata.symbol")
        object.__setattr__(self, "symbol", str(self.symbol).strip().upper())
        object.__setattr__(self, "quantity", MonetaryDecimal.validate_positive(self.quantity, "metadata.quantity"))
        object.__setattr__(self, "price", MonetaryDecimal.validate_positive(self.price, "metadata.price"))


@dataclass(frozen=True)
class FundingMetadata:
    """Funding rail details for DEPOSIT / WITHDRAWAL"""
    transaction_hash: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    payment_proof: Optional[str] = None
    notes: Optional[str] = None
    kind: str = "funding"


@dataclass(frozen=True)
class GeneralMetadata:
    """Free-text context for every other type"""
    notes: Optional[str] = None
    reference: Optional[str] = None
    kind: str = "general"


TransactionMetadata = Union[InvestmentMetadata, FundingMetadata, GeneralMetadata]

_VARIANT_BY_KIND: Dict[str, Type] = {
    "investment": InvestmentMetadata,
    "funding": FundingMetadata,
    "general": GeneralMetadata,
}

METADATA_VARIANT_BY_TYPE: Dict[WalletTransactionType, Type] = {
    WalletTransactionType.INVESTMENT_BUY: InvestmentMetadata,
    WalletTransactionType.INVESTMENT_SELL: InvestmentMetadata,
    WalletTransactionType.DEPOSIT: FundingMetadata,
    WalletTransactionType.WITHDRAWAL: FundingMetadata,
    WalletTransactionType.INTERNAL_TRANSFER: GeneralMetadata,
    WalletTransactionType.REFUND: GeneralMetadata,
    WalletTransactionType.FEE: GeneralMetadata,
    WalletTransactionType.BONUS: GeneralMetadata,
    WalletTransactionType.ADJUSTMENT: GeneralMetadata,
}


def validate_metadata(
    tx_type: WalletTransactionType,
    metadata: Optional[TransactionMetadata],
) -> Optional[TransactionMetadata]:
    """
    Check that ``metadata`` is the variant ``tx_type`` requires.
    Investment entries must carry trade details; other types may omit metadata.
    """
    expected = METADATA_VARIANT_BY_TYPE[tx_type]
    if metadata is None:
        if expected is InvestmentMetadata:
            raise InvalidArgumentError(
                f"{tx_type.value} requires investment metadata (symbol, quantity, price)",
                field="metadata",
            )
        return None
    if not isinstance(metadata, expected):
        raise InvalidArgumentError(
            f"{tx_type.value} expects {expected.__name__}, got {type(metadata).__name__}",
            field="metadata",
        )
    return metadata


def metadata_to_dict(metadata: Optional[TransactionMetadata]) -> Optional[Dict[str, Any]]:
    if metadata is None:
        return None
    data = asdict(metadata)
    for key, value in data.items():
        if isinstance(value, Decimal):
            data[key] = str(value)
    return {key: value for key, value in data.items() if value is not None}


def metadata_from_dict(data: Optional[Dict[str, Any]]) -> Optional[TransactionMetadata]:
    if not data:
        return None
    variant = _VARIANT_BY_KIND.get(data.get("kind", ""))
    if variant is None:
        raise InvalidArgumentError(f"Unknown metadata kind: {data.get('kind')!r}", field="metadata")
    allowed = {f.name for f in fields(variant)}
    return variant(**{key: value for key, value in data.items() if key in allowed})
