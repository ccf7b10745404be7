"""
Change Extract Generator

Writes a synthetic booking change extract (CSV and Parquet) for local runs:

    python scripts/generate_change_events.py --bookings 5000
"""

import argparse

from booking_cdc.data.generators import BookingChangeGenerator


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a synthetic booking change extract")
    parser.add_argument("--bookings", type=int, default=5000)
    parser.add_argument("--days", type=int, default=30, help="Spread bookings over this many days")
    parser.add_argument("--output", default="data/generated")
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    from datetime import timedelta
    from booking_cdc.schemas import utcnow

    end = utcnow()
    generator = BookingChangeGenerator(seed=args.seed)
    rows = generator.generate(n_bookings=args.bookings, start_date=end - timedelta(days=args.days), end_date=end)
    paths = generator.save(rows, args.output)

    print(f"Generated {len(rows):,} change rows for {args.bookings:,} bookings")
    for fmt, path in paths.items():
        print(f"  {fmt}: {path}")


if __name__ == "__main__":
    main()
