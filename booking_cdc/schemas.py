"""
Domain Schemas

Pydantic models shared by ingestion, derivation, aggregation and serving:

- ChangeEvent: one captured mutation of a movie booking
- DerivedRecord: a ChangeEvent plus computed business fields
- AnalyticsSnapshot: aggregate view over a window of derived records

Booking fields are coerced leniently. A missing or non-numeric value becomes
``None`` instead of failing validation, so malformed source rows still flow
through the pipeline and surface as invalid bookings for audit.
"""

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MONEY_QUANTUM = Decimal("0.01")
ZERO_MONEY = Decimal("0.00")

# Largest values the stores hold: INTEGER counts, NUMERIC(10, 2) prices
MAX_TICKET_COUNT = 2**31 - 1
MAX_TICKET_PRICE = Decimal("99999999.99")


# =============================================================================
# ENUMERATIONS
# =============================================================================

class BookingStatus(str, Enum):
    """Booking status values recognised by the derivation rules"""
    BOOKED = "BOOKED"
    CANCELLED = "CANCELLED"


class ChangeAction(str, Enum):
    """Kind of row-level mutation captured from the source"""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class StatusCategory(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class SizeCategory(str, Enum):
    SINGLE = "SINGLE"
    GROUP = "GROUP"
    LARGE_GROUP = "LARGE_GROUP"


class PriceCategory(str, Enum):
    BUDGET = "BUDGET"
    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"


# =============================================================================
# COERCION HELPERS
# =============================================================================

def utcnow() -> datetime:
    """Current time as naive UTC, the representation used by every store"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def coerce_key(value: Any) -> Optional[str]:
    """Identifier as a trimmed string, ``None`` when missing or blank"""
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def coerce_int(value: Any, limit: Optional[int] = None) -> Optional[int]:
    """Integer value, ``None`` when missing, non-numeric, fractional or beyond ``limit``"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    else:
        parsed = coerce_decimal(value, quantize=False)
        if parsed is None or parsed != parsed.to_integral_value():
            return None
        number = int(parsed)
    if limit is not None and abs(number) > limit:
        return None
    return number


def coerce_decimal(value: Any, quantize: bool = True, limit: Optional[Decimal] = None) -> Optional[Decimal]:
    """Finite decimal value (2 dp when ``quantize``) within ``limit``, ``None`` otherwise"""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    if limit is not None and abs(number) > limit:
        return None
    if quantize:
        number = number.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
        # rounding can carry past the limit
        if limit is not None and abs(number) > limit:
            return None
    return number


def coerce_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp into naive UTC.

    Accepts datetimes, dates, ISO-8601 strings (``Z`` suffix allowed) and
    epoch numbers (seconds, or milliseconds when the value is large).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float, Decimal)):
        seconds = float(value)
        if abs(seconds) > 1e11:
            seconds = seconds / 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return coerce_timestamp(datetime.fromisoformat(text))
    except ValueError:
        return None


# =============================================================================
# CHANGE EVENT
# =============================================================================

class ChangeEvent(BaseModel):
    """
    Immutable record of one booking mutation.

    ``sequence`` is assigned by the ingestion buffer when the event is stored
    and is the position consumers resume from.
    """

    model_config = ConfigDict(frozen=True)

    sequence: Optional[int] = None

    booking_id: Optional[str] = None
    customer_id: Optional[str] = None
    movie_id: Optional[str] = None
    booking_date: Optional[datetime] = None
    status: Optional[str] = None
    ticket_count: Optional[int] = None
    ticket_price: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    change_action: ChangeAction
    is_update: bool = False
    change_timestamp: datetime

    raw_payload: Optional[Dict[str, Any]] = Field(default=None, repr=False)

    @field_validator("booking_id", "customer_id", "movie_id", mode="before")
    @classmethod
    def _key(cls, v: Any) -> Optional[str]:
        return coerce_key(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v: Any) -> Optional[str]:
        key = coerce_key(v)
        return key.upper() if key else None

    @field_validator("ticket_count", mode="before")
    @classmethod
    def _count(cls, v: Any) -> Optional[int]:
        return coerce_int(v, limit=MAX_TICKET_COUNT)

    @field_validator("ticket_price", mode="before")
    @classmethod
    def _price(cls, v: Any) -> Optional[Decimal]:
        return coerce_decimal(v, limit=MAX_TICKET_PRICE)

    @field_validator("booking_date", "created_at", "updated_at", mode="before")
    @classmethod
    def _optional_ts(cls, v: Any) -> Optional[datetime]:
        return coerce_timestamp(v)

    @field_validator("change_timestamp", mode="before")
    @classmethod
    def _change_ts(cls, v: Any) -> Any:
        parsed = coerce_timestamp(v)
        # Leave unparseable input for pydantic to reject
        return parsed if parsed is not None else v

    @property
    def total_amount(self) -> Optional[Decimal]:
        """ticket_count x ticket_price; never settable on its own"""
        if self.ticket_count is None or self.ticket_price is None:
            return None
        return (self.ticket_price * self.ticket_count).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)

    @property
    def dedup_key(self) -> str:
        """Identity used to reject redelivered events"""
        return "|".join([
            self.booking_id or "",
            self.change_timestamp.isoformat(),
            self.change_action.value,
        ])


# =============================================================================
# DERIVED RECORD
# =============================================================================

class DerivedRecord(BaseModel):
    """ChangeEvent snapshot enriched with categorisations and revenue split"""

    model_config = ConfigDict(frozen=True)

    event_sequence: Optional[int] = None

    booking_id: Optional[str] = None
    customer_id: Optional[str] = None
    movie_id: Optional[str] = None
    booking_date: Optional[datetime] = None
    status: Optional[str] = None
    ticket_count: Optional[int] = None
    ticket_price: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    change_action: ChangeAction
    is_update: bool = False
    change_timestamp: datetime
    effective_at: datetime

    booking_status_category: Optional[StatusCategory] = None
    booking_size_category: Optional[SizeCategory] = None
    price_category: Optional[PriceCategory] = None
    active_revenue: Decimal = ZERO_MONEY
    lost_revenue: Decimal = ZERO_MONEY
    is_valid_booking: bool = False


# =============================================================================
# ANALYTICS SNAPSHOT
# =============================================================================

class BreakdownRow(BaseModel):
    """One group of a snapshot breakdown"""

    model_config = ConfigDict(frozen=True)

    key: str
    bookings: int = 0
    tickets: int = 0
    cancelled: int = 0
    active_revenue: Decimal = ZERO_MONEY
    lost_revenue: Decimal = ZERO_MONEY


class AnalyticsSnapshot(BaseModel):
    """
    Aggregate view over the derived records of a window.

    Contains every counter needed to resume folding, so a stored snapshot can
    be extended with newer records instead of rescanning the window.
    """

    model_config = ConfigDict(frozen=True)

    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    as_of_sequence: Optional[int] = None

    total_records: int = 0
    valid_bookings: int = 0
    invalid_records: int = 0
    active_bookings: int = 0
    cancelled_bookings: int = 0
    total_tickets: int = 0

    active_revenue: Decimal = ZERO_MONEY
    lost_revenue: Decimal = ZERO_MONEY
    gross_revenue: Decimal = ZERO_MONEY

    cancellation_rate: float = 0.0
    data_quality_score: float = 0.0

    by_movie: List[BreakdownRow] = Field(default_factory=list)
    by_size_category: List[BreakdownRow] = Field(default_factory=list)
    by_price_category: List[BreakdownRow] = Field(default_factory=list)
    by_status_category: List[BreakdownRow] = Field(default_factory=list)
    by_change_action: List[BreakdownRow] = Field(default_factory=list)
    by_day: List[BreakdownRow] = Field(default_factory=list)
