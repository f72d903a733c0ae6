from __future__ import annotations

from enum import Enum


class GatewayMode(str, Enum):
    """Which Param credential set is active."""

    TEST = "test"
    PRODUCTION = "production"


class HashScheme(str, Enum):
    SHA256_B64 = "sha256_b64"
    HMAC_SHA256_B64 = "hmac_sha256_b64"


class SecurityTier(str, Enum):
    """Param ``Islem_Guvenlik_Tip`` values."""

    NON_3D = "NS"
    THREE_D = "3D"


class DurationUnit(str, Enum):
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class PlanTier(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    VIP = "vip"


class Platform(str, Enum):
    """Where a subscription was bought."""

    PARAM = "param"
    LEMONSQUEEZY = "lemonsqueezy"
    ANDROID = "android"
    IOS = "ios"
    ADMIN = "admin"


class Currency(str, Enum):
    TRY = "TRY"
    USD = "USD"

    @property
    def param_code(self) -> str:
        """ISO 4217 numeric code expected by Param."""
        return {"TRY": "949", "USD": "840"}[self.value]
