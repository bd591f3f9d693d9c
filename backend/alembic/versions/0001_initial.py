"""initial schema (users, catalog, listings, billing, messaging, moderation)

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="tenant"),
        sa.Column("phone", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("preferred_contact", sa.String(length=16), nullable=False, server_default="email"),
        sa.Column("notification_consent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_notifications", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "auth_codes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("purpose", sa.String(length=40), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_auth_codes_email", "auth_codes", ["email"])
    op.create_index("ix_auth_codes_purpose", "auth_codes", ["purpose"])

    op.create_table(
        "boroughs",
        sa.Column("id", sa.String(length=40), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("image_url", sa.String(length=512), nullable=False, server_default=""),
    )

    op.create_table(
        "neighborhoods",
        sa.Column("id", sa.String(length=80), primary_key=True),
        sa.Column("borough_id", sa.String(length=40), sa.ForeignKey("boroughs.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("image_url", sa.String(length=512), nullable=False, server_default=""),
    )
    op.create_index("ix_neighborhoods_borough_id", "neighborhoods", ["borough_id"])

    op.create_table(
        "listings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("landlord_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deposit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bedrooms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bathrooms", sa.Float(), nullable=False, server_default="0"),
        sa.Column("square_feet", sa.Integer(), nullable=True),
        sa.Column("address", sa.String(length=512), nullable=False, server_default=""),
        sa.Column("zip_code", sa.String(length=10), nullable=False, server_default=""),
        sa.Column("neighborhood_id", sa.String(length=80), sa.ForeignKey("neighborhoods.id"), nullable=False),
        sa.Column("borough_id", sa.String(length=40), sa.ForeignKey("boroughs.id"), nullable=False),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lng", sa.Float(), nullable=True),
        sa.Column("key_feature", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("amenities_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("available_date", sa.Date(), nullable=False),
        sa.Column("featured", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("moderation_reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_listings_landlord_id", "listings", ["landlord_id"])
    op.create_index("ix_listings_bedrooms", "listings", ["bedrooms"])
    op.create_index("ix_listings_neighborhood_id", "listings", ["neighborhood_id"])
    op.create_index("ix_listings_borough_id", "listings", ["borough_id"])
    op.create_index("ix_listings_status", "listings", ["status"])

    op.create_table(
        "listing_images",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("listing_id", sa.String(length=36), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("url", sa.String(length=512), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cloudinary_public_id", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("content_type", sa.String(length=100), nullable=False, server_default=""),
        sa.Column("size_bytes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("listing_id", "position", name="uq_listing_image_position"),
    )
    op.create_index("ix_listing_images_listing_id", "listing_images", ["listing_id"])

    op.create_table(
        "listing_subscriptions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("listing_id", sa.String(length=36), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("owner_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("plan_type", sa.String(length=20), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("amount_paid", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stripe_session_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("recurring", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("billing_cycle", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("stripe_session_id", name="uq_listing_subscriptions_stripe_session_id"),
    )
    op.create_index("ix_listing_subscriptions_listing_id", "listing_subscriptions", ["listing_id"])
    op.create_index("ix_listing_subscriptions_owner_id", "listing_subscriptions", ["owner_id"])
    op.create_index("ix_listing_subscriptions_end_date", "listing_subscriptions", ["end_date"])
    op.create_index("ix_listing_subscriptions_status", "listing_subscriptions", ["status"])

    op.create_table(
        "pending_submissions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("form_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("plan_type", sa.String(length=20), nullable=False),
        sa.Column("stripe_session_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="awaiting_payment"),
        sa.Column("listing_id", sa.String(length=36), sa.ForeignKey("listings.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("stripe_session_id", name="uq_pending_submissions_stripe_session_id"),
    )
    op.create_index("ix_pending_submissions_email", "pending_submissions", ["email"])
    op.create_index("ix_pending_submissions_status", "pending_submissions", ["status"])

    op.create_table(
        "applications",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("listing_id", sa.String(length=36), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("landlord_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("move_in_date", sa.Date(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("listing_id", "tenant_id", name="uq_application_listing_tenant"),
    )
    op.create_index("ix_applications_listing_id", "applications", ["listing_id"])
    op.create_index("ix_applications_tenant_id", "applications", ["tenant_id"])
    op.create_index("ix_applications_landlord_id", "applications", ["landlord_id"])
    op.create_index("ix_applications_status", "applications", ["status"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("conversation_id", sa.String(length=36), nullable=False),
        sa.Column("sender_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("recipient_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("listing_id", sa.String(length=36), sa.ForeignKey("listings.id"), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])
    op.create_index("ix_messages_sender_id", "messages", ["sender_id"])
    op.create_index("ix_messages_recipient_id", "messages", ["recipient_id"])
    op.create_index("ix_messages_listing_id", "messages", ["listing_id"])

    op.create_table(
        "saved_listings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("listing_id", sa.String(length=36), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "listing_id", name="uq_saved_tenant_listing"),
    )
    op.create_index("ix_saved_listings_tenant_id", "saved_listings", ["tenant_id"])
    op.create_index("ix_saved_listings_listing_id", "saved_listings", ["listing_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("kind", sa.String(length=40), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("body", sa.Text(), nullable=False, server_default=""),
        sa.Column("link", sa.String(length=512), nullable=False, server_default=""),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_kind", "notifications", ["kind"])
    op.create_index("ix_notifications_read", "notifications", ["read"])

    op.create_table(
        "neighborhood_highlights",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("neighborhood_id", sa.String(length=80), sa.ForeignKey("neighborhoods.id"), nullable=False),
        sa.Column("kind", sa.String(length=60), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("image_url", sa.String(length=512), nullable=False, server_default=""),
        sa.Column("added_by", sa.String(length=36), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_neighborhood_highlights_neighborhood_id", "neighborhood_highlights", ["neighborhood_id"])
    op.create_index("ix_neighborhood_highlights_added_by", "neighborhood_highlights", ["added_by"])
    op.create_index("ix_neighborhood_highlights_status", "neighborhood_highlights", ["status"])

    op.create_table(
        "moderation_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor_user_id", sa.String(length=36), nullable=True),
        sa.Column("entity_type", sa.String(length=40), nullable=False),
        sa.Column("entity_id", sa.String(length=80), nullable=False),
        sa.Column("action", sa.String(length=40), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_moderation_logs_actor_user_id", "moderation_logs", ["actor_user_id"])
    op.create_index("ix_moderation_logs_entity_type", "moderation_logs", ["entity_type"])
    op.create_index("ix_moderation_logs_entity_id", "moderation_logs", ["entity_id"])
    op.create_index("ix_moderation_logs_action", "moderation_logs", ["action"])


def downgrade() -> None:
    op.drop_table("moderation_logs")
    op.drop_table("neighborhood_highlights")
    op.drop_table("notifications")
    op.drop_table("saved_listings")
    op.drop_table("messages")
    op.drop_table("applications")
    op.drop_table("pending_submissions")
    op.drop_table("listing_subscriptions")
    op.drop_table("listing_images")
    op.drop_table("listings")
    op.drop_table("neighborhoods")
    op.drop_table("boroughs")
    op.drop_table("auth_codes")
    op.drop_table("users")
