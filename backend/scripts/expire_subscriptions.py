from __future__ import annotations

import argparse
import datetime as dt
import os

from sqlalchemy import create_engine, text


def main() -> None:
    parser = argparse.ArgumentParser(description="Expire listing subscriptions past their end date.")
    parser.add_argument("--archive", action="store_true", help="also archive listings left without an active subscription")
    args = parser.parse_args()

    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise SystemExit("DATABASE_URL is required")
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)

    today = dt.date.today()
    engine = create_engine(db_url, future=True)
    with engine.begin() as conn:
        expired = conn.execute(
            text("UPDATE listing_subscriptions SET status = 'expired' WHERE status = 'active' AND end_date < :today"),
            {"today": today},
        ).rowcount
        archived = 0
        if args.archive:
            archived = conn.execute(
                text(
                    "UPDATE listings SET status = 'archived' "
                    "WHERE status = 'published' AND NOT EXISTS ("
                    "  SELECT 1 FROM listing_subscriptions s "
                    "  WHERE s.listing_id = listings.id AND s.status = 'active' AND s.end_date >= :today"
                    ")"
                ),
                {"today": today},
            ).rowcount

    print(f"Expired {expired} subscription(s); archived {archived} listing(s).")


if __name__ == "__main__":
    main()
