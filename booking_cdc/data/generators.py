"""
Synthetic Change Event Generator

Generates realistic movie booking change streams for testing and
development. Each booking gets an INSERT, and some get later UPDATEs
(ticket changes or cancellation) and DELETEs. A configurable share of rows
is deliberately dirty (zero tickets, missing price, unknown status), and a
few rows are redelivered to exercise deduplication.
"""

import random
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import polars as pl
from faker import Faker

from booking_cdc.schemas import utcnow

# =============================================================================
# CONFIGURATION
# =============================================================================

PRICE_TIERS = [
    (6.50, 9.99, 0.25),  # matinee
    (10.00, 20.00, 0.60),
    (20.01, 45.00, 0.15),  # premium formats
]

TICKET_COUNTS = [(1, 0.35), (2, 0.35), (3, 0.10), (4, 0.10), (5, 0.05), (8, 0.05)]

DIRTY_MUTATIONS = ("zero_tickets", "missing_price", "unknown_status", "missing_movie")

CHANGE_COLUMNS = [
    "booking_id",
    "customer_id",
    "movie_id",
    "booking_date",
    "status",
    "ticket_count",
    "ticket_price",
    "created_at",
    "updated_at",
    "operation",
    "timestamp",
]


# =============================================================================
# GENERATOR
# =============================================================================

class BookingChangeGenerator:
    """
    Generate booking change rows.

    Example:
        gen = BookingChangeGenerator(seed=7)
        rows = gen.generate(n_bookings=100)
        envelopes = gen.as_envelopes(rows)
    """

    def __init__(
        self,
        seed: Optional[int] = 42,
        n_movies: int = 25,
        n_customers: int = 500,
        update_rate: float = 0.30,
        cancel_rate: float = 0.15,
        delete_rate: float = 0.03,
        dirty_rate: float = 0.05,
        duplicate_rate: float = 0.02,
    ):
        self.random = random.Random(seed)
        self.fake = Faker()
        if seed is not None:
            self.fake.seed_instance(seed)

        self.movie_ids = [f"M{i:04d}" for i in range(1, n_movies + 1)]
        self.customer_ids = [f"C{i:06d}" for i in range(1, n_customers + 1)]
        self.update_rate = update_rate
        self.cancel_rate = cancel_rate
        self.delete_rate = delete_rate
        self.dirty_rate = dirty_rate
        self.duplicate_rate = duplicate_rate

    def _price(self) -> float:
        low, high, _ = self.random.choices(PRICE_TIERS, weights=[t[2] for t in PRICE_TIERS])[0]
        return round(self.random.uniform(low, high), 2)

    def _tickets(self) -> int:
        return self.random.choices([c for c, _ in TICKET_COUNTS], weights=[w for _, w in TICKET_COUNTS])[0]

    def _dirty(self, image: Dict[str, Any]) -> Dict[str, Any]:
        mutation = self.random.choice(DIRTY_MUTATIONS)
        if mutation == "zero_tickets":
            image["ticket_count"] = 0
        elif mutation == "missing_price":
            image["ticket_price"] = None
        elif mutation == "unknown_status":
            image["status"] = self.random.choice(["PENDING", "REFUNDED", "on hold"])
        else:
            image["movie_id"] = None
        return image

    @staticmethod
    def _row(image: Dict[str, Any], operation: str, ts: datetime) -> Dict[str, Any]:
        row = dict(image)
        row["updated_at"] = ts.isoformat()
        row["operation"] = operation
        row["timestamp"] = ts.isoformat()
        return row

    def generate(
        self,
        n_bookings: int = 1000,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Generate change rows for ``n_bookings`` bookings, ordered by change time"""
        end_date = end_date or utcnow()
        start_date = start_date or end_date - timedelta(days=30)

        rows: List[Dict[str, Any]] = []
        for _ in range(n_bookings):
            created = self.fake.date_time_between(start_date=start_date, end_date=end_date)
            image = {
                "booking_id": self.fake.unique.bothify("BK-########"),
                "customer_id": self.random.choice(self.customer_ids),
                "movie_id": self.random.choice(self.movie_ids),
                "booking_date": created.isoformat(),
                "status": "BOOKED",
                "ticket_count": self._tickets(),
                "ticket_price": self._price(),
                "created_at": created.isoformat(),
            }
            if self.random.random() < self.dirty_rate:
                image = self._dirty(image)
            rows.append(self._row(image, "INSERT", created))

            ts = created
            if self.random.random() < self.update_rate:
                ts = ts + timedelta(minutes=self.random.randint(1, 600))
                image = dict(image, ticket_count=self._tickets())
                rows.append(self._row(image, "UPDATE", ts))

            if self.random.random() < self.cancel_rate:
                ts = ts + timedelta(minutes=self.random.randint(1, 600))
                image = dict(image, status="CANCELLED")
                rows.append(self._row(image, "UPDATE", ts))
            elif self.random.random() < self.delete_rate:
                ts = ts + timedelta(minutes=self.random.randint(1, 600))
                rows.append(self._row(image, "DELETE", ts))

        rows.sort(key=lambda r: r["timestamp"])

        redelivered = [dict(r) for r in rows if self.random.random() < self.duplicate_rate]
        for row in redelivered:
            rows.insert(self.random.randint(0, len(rows)), row)

        return rows

    @staticmethod
    def as_envelopes(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Wrap flat rows as generic before/after change envelopes"""
        envelopes = []
        for row in rows:
            image = {k: v for k, v in row.items() if k not in ("operation", "timestamp")}
            is_delete = row["operation"] == "DELETE"
            envelopes.append({
                "operation": row["operation"],
                "timestamp": row["timestamp"],
                "before": image if is_delete else None,
                "after": None if is_delete else image,
            })
        return envelopes

    @staticmethod
    def to_frame(rows: List[Dict[str, Any]]) -> pl.DataFrame:
        return pl.DataFrame(
            [{column: row.get(column) for column in CHANGE_COLUMNS} for row in rows],
            schema={
                "booking_id": pl.Utf8,
                "customer_id": pl.Utf8,
                "movie_id": pl.Utf8,
                "booking_date": pl.Utf8,
                "status": pl.Utf8,
                "ticket_count": pl.Int64,
                "ticket_price": pl.Float64,
                "created_at": pl.Utf8,
                "updated_at": pl.Utf8,
                "operation": pl.Utf8,
                "timestamp": pl.Utf8,
            },
        )

    def save(self, rows: List[Dict[str, Any]], output_dir: str, name: str = "booking_changes") -> Dict[str, Path]:
        """Write rows as CSV and Parquet extracts"""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        df = self.to_frame(rows)
        paths = {"csv": out / f"{name}.csv", "parquet": out / f"{name}.parquet"}
        df.write_csv(paths["csv"])
        df.write_parquet(paths["parquet"])
        return paths
