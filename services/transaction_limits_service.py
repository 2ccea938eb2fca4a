"""
Transaction Limits Service

Per-direction, per-token min/max bounds for swap submissions plus the global
active switch. validate_transaction() is a pure function over a limits
configuration; TransactionLimitsService loads and administers the versioned
configuration stored in the transaction_limits table.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Any, Union

from sqlalchemy import select, func

from config import Config
from database import managed_session
from models import SwapDirection, TokenType, TransactionLimitsRecord
from services.audit_logger import get_audit_logger
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

NGN = "NGN"

# Limit block keys per asset, in the camelCase shape admins edit
LIMIT_KEYS = {
    NGN: ("minNairaAmount", "maxNairaAmount"),
    TokenType.SUI.value: ("minSuiAmount", "maxSuiAmount"),
    TokenType.USDC.value: ("minUsdcAmount", "maxUsdcAmount"),
    TokenType.USDT.value: ("minUsdtAmount", "maxUsdtAmount"),
}

ASSET_LABELS = {
    NGN: "Naira",
    TokenType.SUI.value: "SUI",
    TokenType.USDC.value: "USDC",
    TokenType.USDT.value: "USDT",
}

DEFAULT_LIMIT_BLOCK = {
    "minNairaAmount": Decimal("1000"),
    "maxNairaAmount": Decimal("1000000"),
    "minSuiAmount": Decimal("0.1"),
    "maxSuiAmount": Decimal("1000"),
    "minUsdcAmount": Decimal("1"),
    "maxUsdcAmount": Decimal("10000"),
    "minUsdtAmount": Decimal("1"),
    "maxUsdtAmount": Decimal("10000"),
}


class LimitsConfigurationError(Exception):
    """Raised when an admin submits an inconsistent limits configuration"""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


@dataclass
class TransactionLimits:
    """Limits configuration in effect for submissions"""
    on_ramp: Dict[str, Decimal]
    off_ramp: Dict[str, Decimal]
    is_active: bool = True
    updated_by: str = "system"
    version: int = 0
    last_updated: Optional[datetime] = None

    def block_for(self, direction: SwapDirection) -> Dict[str, Decimal]:
        return self.on_ramp if direction == SwapDirection.ON_RAMP else self.off_ramp

    def bounds(self, direction: SwapDirection, asset: str):
        min_key, max_key = LIMIT_KEYS[asset]
        block = self.block_for(direction)
        return block[min_key], block[max_key]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "onRamp": {key: _decimal_str(value) for key, value in self.on_ramp.items()},
            "offRamp": {key: _decimal_str(value) for key, value in self.off_ramp.items()},
            "isActive": self.is_active,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
            "updatedBy": self.updated_by,
            "version": self.version,
        }


@dataclass
class LimitValidationResult:
    """Outcome of checking one proposed swap against the limits"""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"isValid": self.is_valid, "errors": self.errors, "warnings": self.warnings}


def default_limits() -> TransactionLimits:
    return TransactionLimits(
        on_ramp=dict(DEFAULT_LIMIT_BLOCK),
        off_ramp=dict(DEFAULT_LIMIT_BLOCK),
        is_active=True,
        updated_by="system",
        version=0,
    )


def _parse_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        return None


def _format_bound(asset: str, value: Decimal) -> str:
    if asset == NGN:
        return f"₦{value:,.0f}" if value == value.to_integral_value() else MonetaryDecimal.format_ngn(value)
    return f"{value.normalize():f}"


def validate_transaction(
    limits: TransactionLimits,
    direction: Union[SwapDirection, str],
    token_type: Union[TokenType, str],
    token_amount,
    fiat_amount,
    warning_ratio: Optional[Decimal] = None,
    require_fiat: bool = True,
) -> LimitValidationResult:
    """Check a proposed swap against the limits. Collects every breach, never fails fast.

    With require_fiat=False a missing Naira amount is not checked (quote previews).
    """
    errors: List[str] = []
    warnings: List[str] = []

    direction_enum = _parse_enum(SwapDirection, direction)
    token_enum = _parse_enum(TokenType, token_type)
    if direction_enum is None:
        errors.append(f"Unsupported swap direction: {direction}")
    if token_enum is None:
        errors.append(f"Unsupported token type: {token_type}")

    tokens = MonetaryDecimal.parse_positive(token_amount, "token_amount")
    naira = MonetaryDecimal.parse_positive(fiat_amount, "fiat_amount")
    check_naira = require_fiat or fiat_amount is not None
    if tokens is None:
        errors.append("Token amount must be a positive number")
    if check_naira and naira is None:
        errors.append("Naira amount must be a positive number")

    if errors:
        return LimitValidationResult(is_valid=False, errors=errors, warnings=warnings)

    if not limits.is_active:
        warnings.append("Transaction limits are currently disabled")
        return LimitValidationResult(is_valid=True, errors=errors, warnings=warnings)

    ratio = warning_ratio if warning_ratio is not None else Config.LIMITS_WARNING_RATIO

    checks = [(token_enum.value, tokens)]
    if check_naira:
        checks.append((NGN, naira))
    for asset, amount in checks:
        minimum, maximum = limits.bounds(direction_enum, asset)
        label = ASSET_LABELS[asset]
        if amount < minimum:
            errors.append(f"Minimum {label} amount is {_format_bound(asset, minimum)}")
        if amount > maximum:
            errors.append(f"Maximum {label} amount is {_format_bound(asset, maximum)}")
        elif amount > maximum * ratio:
            warnings.append(f"{label} amount is close to the maximum limit")

    return LimitValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def validate_limits_config(on_ramp: Optional[Dict], off_ramp: Optional[Dict]) -> List[str]:
    """Admin-side consistency check: every min >= 0 and every max > min"""
    if not on_ramp or not off_ramp:
        return ["Both onRamp and offRamp limits are required"]

    errors: List[str] = []
    for prefix, block in (("On-ramp", on_ramp), ("Off-ramp", off_ramp)):
        for asset, (min_key, max_key) in LIMIT_KEYS.items():
            label = ASSET_LABELS[asset]
            minimum = MonetaryDecimal.to_decimal(block.get(min_key), min_key) if block.get(min_key) is not None else None
            maximum = MonetaryDecimal.to_decimal(block.get(max_key), max_key) if block.get(max_key) is not None else None
            if minimum is None or maximum is None:
                errors.append(f"{prefix} {label} minimum and maximum are required")
                continue
            if minimum < 0:
                errors.append(f"{prefix} minimum {label} amount must be positive")
            if maximum <= minimum:
                errors.append(f"{prefix} maximum {label} amount must be greater than minimum")
    return errors


def _block_from_json(block: Dict[str, Any]) -> Dict[str, Decimal]:
    return {key: MonetaryDecimal.to_decimal(block[key], key) for key in DEFAULT_LIMIT_BLOCK}


def _block_to_json(block: Dict[str, Any]) -> Dict[str, str]:
    """Limits are stored as decimal strings so no precision is lost in the JSON column"""
    return {key: _decimal_str(MonetaryDecimal.to_decimal(block[key], key)) for key in DEFAULT_LIMIT_BLOCK}


def _decimal_str(value: Decimal) -> str:
    return format(value, "f")


class TransactionLimitsService:
    """Loads and administers the versioned limits configuration"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory
        self.audit = get_audit_logger()

    def get_limits(self) -> TransactionLimits:
        """Latest stored version, or the built-in defaults when none is stored"""
        with managed_session(self.session_factory) as session:
            record = session.execute(
                select(TransactionLimitsRecord).order_by(TransactionLimitsRecord.version.desc()).limit(1)
            ).scalar_one_or_none()
            if record is None:
                return default_limits()
            return self._to_limits(record)

    def validate(self, direction, token_type, token_amount, fiat_amount,
                 require_fiat: bool = True) -> LimitValidationResult:
        """Validate a proposed swap against the currently stored limits"""
        result = validate_transaction(self.get_limits(), direction, token_type, token_amount, fiat_amount,
                                      require_fiat=require_fiat)
        if not result.is_valid:
            logger.info(f"🚫 LIMITS_REJECTED: {direction} {token_type} {token_amount} / ₦{fiat_amount}: {result.errors}")
        return result

    def update_limits(self, limits: Dict[str, Any], updated_by: str = "admin") -> TransactionLimits:
        """Store a new limits version after validating it"""
        on_ramp = limits.get("onRamp")
        off_ramp = limits.get("offRamp")
        errors = validate_limits_config(on_ramp, off_ramp)
        if errors:
            logger.warning(f"⚠️ LIMITS_UPDATE_REJECTED by {updated_by}: {errors}")
            raise LimitsConfigurationError(errors)

        current = self.get_limits()
        is_active = limits.get("isActive", current.is_active)
        stored = self._store(_block_to_json(on_ramp), _block_to_json(off_ramp), bool(is_active), updated_by)

        logger.info(f"✅ LIMITS_UPDATED: version {stored.version} by {updated_by}")
        self.audit.record(
            "transaction_limits_updated",
            entity_id=str(stored.version),
            actor=updated_by,
            source="admin",
            details=stored.to_dict(),
        )
        return stored

    def set_active(self, is_active: bool, updated_by: str = "admin") -> TransactionLimits:
        """Toggle the emergency bypass switch; stores a new version"""
        current = self.get_limits()
        stored = self._store(
            _block_to_json(current.on_ramp), _block_to_json(current.off_ramp), is_active, updated_by
        )
        if is_active:
            logger.info(f"✅ LIMITS_ENABLED by {updated_by}")
        else:
            logger.warning(f"⚠️ LIMITS_DISABLED by {updated_by} - all amounts will be accepted")
        self.audit.record(
            "transaction_limits_enabled" if is_active else "transaction_limits_disabled",
            entity_id=str(stored.version),
            actor=updated_by,
            source="admin",
        )
        return stored

    def reset_to_defaults(self, updated_by: str = "admin") -> TransactionLimits:
        stored = self._store(
            _block_to_json(DEFAULT_LIMIT_BLOCK), _block_to_json(DEFAULT_LIMIT_BLOCK), True, updated_by
        )
        logger.info(f"🔄 LIMITS_RESET to defaults by {updated_by}")
        self.audit.record(
            "transaction_limits_reset", entity_id=str(stored.version), actor=updated_by, source="admin"
        )
        return stored

    def _store(self, on_ramp: Dict, off_ramp: Dict, is_active: bool, updated_by: str) -> TransactionLimits:
        with managed_session(self.session_factory) as session:
            latest = session.execute(select(func.max(TransactionLimitsRecord.version))).scalar()
            record = TransactionLimitsRecord(
                version=(latest or 0) + 1,
                on_ramp=on_ramp,
                off_ramp=off_ramp,
                is_active=is_active,
                updated_by=updated_by,
                last_updated=datetime.now(timezone.utc),
            )
            session.add(record)
            session.flush()
            return self._to_limits(record)

    @staticmethod
    def _to_limits(record: TransactionLimitsRecord) -> TransactionLimits:
        return TransactionLimits(
            on_ramp=_block_from_json(record.on_ramp),
            off_ramp=_block_from_json(record.off_ramp),
            is_active=bool(record.is_active),
            updated_by=record.updated_by,
            version=record.version,
            last_updated=record.last_updated,
        )


# Global service instance
transaction_limits_service = TransactionLimitsService()


def get_transaction_limits_service() -> TransactionLimitsService:
    """Get the shared transaction limits service"""
    return transaction_limits_service
