from __future__ import annotations

import argparse
import os

from sqlalchemy import create_engine, text


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete a user and everything they own.")
    parser.add_argument("email")
    args = parser.parse_args()

    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise SystemExit("DATABASE_URL is required")
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)

    email = args.email.strip().lower()
    engine = create_engine(db_url, future=True)
    with engine.begin() as conn:
        user_id = conn.execute(text("SELECT id FROM users WHERE lower(email) = :email"), {"email": email}).scalar()
        if not user_id:
            raise SystemExit(f"No user with email {email}")

        owned = "SELECT id FROM listings WHERE landlord_id = :uid"
        params = {"uid": user_id}
        conn.execute(text(f"DELETE FROM listing_images WHERE listing_id IN ({owned})"), params)
        conn.execute(text(f"DELETE FROM saved_listings WHERE listing_id IN ({owned}) OR tenant_id = :uid"), params)
        conn.execute(text(f"DELETE FROM applications WHERE listing_id IN ({owned}) OR tenant_id = :uid OR landlord_id = :uid"), params)
        conn.execute(text(f"UPDATE pending_submissions SET listing_id = NULL WHERE listing_id IN ({owned})"), params)
        conn.execute(text("DELETE FROM messages WHERE sender_id = :uid OR recipient_id = :uid"), params)
        conn.execute(text(f"UPDATE messages SET listing_id = NULL WHERE listing_id IN ({owned})"), params)
        conn.execute(text(f"DELETE FROM listing_subscriptions WHERE listing_id IN ({owned}) OR owner_id = :uid"), params)
        conn.execute(text("DELETE FROM listings WHERE landlord_id = :uid"), params)
        conn.execute(text("DELETE FROM notifications WHERE user_id = :uid"), params)
        conn.execute(text("UPDATE neighborhood_highlights SET added_by = NULL WHERE added_by = :uid"), params)
        conn.execute(text("DELETE FROM auth_codes WHERE lower(email) = :email"), {"email": email})
        conn.execute(
            text(
                "INSERT INTO moderation_logs (actor_user_id, entity_type, entity_id, action, reason, created_at) "
                "VALUES (NULL, 'user', :uid, 'delete', 'deleted via script', CURRENT_TIMESTAMP)"
            ),
            params,
        )
        conn.execute(text("DELETE FROM users WHERE id = :uid"), params)

    print(f"Deleted user {email} ({user_id}).")


if __name__ == "__main__":
    main()
