"""create contract signing tables

Revision ID: a7c3e9d1b2f4
Revises:
Create Date: 2026-10-19 10:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "a7c3e9d1b2f4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing = set(inspector.get_table_names())

    if "digital_certificates" not in existing:
        op.create_table(
            "digital_certificates",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("alias", sa.String(length=100), nullable=False),
            sa.Column("subject_dn", sa.String(length=500), nullable=False),
            sa.Column("issuer_dn", sa.String(length=500), nullable=False),
            sa.Column("serial_number", sa.String(length=100), nullable=False, unique=True),
            sa.Column("certificate_type", sa.String(length=30), nullable=False),
            sa.Column("key_algorithm", sa.String(length=20), nullable=False),
            sa.Column("key_size", sa.Integer(), nullable=True),
            sa.Column("signature_algorithm", sa.String(length=50), nullable=False),
            sa.Column("certificate_data", sa.LargeBinary(), nullable=False),
            sa.Column("public_key_data", sa.LargeBinary(), nullable=False),
            sa.Column("keystore_data", sa.LargeBinary(), nullable=True),
            sa.Column("valid_from", sa.DateTime(), nullable=False),
            sa.Column("valid_to", sa.DateTime(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="ACTIVE"),
            sa.Column("fingerprint_sha1", sa.String(length=40), nullable=False),
            sa.Column("fingerprint_sha256", sa.String(length=64), nullable=False, unique=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(length=100), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_digital_certificates_alias", "digital_certificates", ["alias"])
        op.create_index("ix_digital_certificates_valid_to", "digital_certificates", ["valid_to"])
        op.create_index("ix_digital_certificates_status", "digital_certificates", ["status"])
        op.create_index(
            "ix_digital_certificates_fingerprint_sha1", "digital_certificates", ["fingerprint_sha1"]
        )

    if "contracts" not in existing:
        op.create_table(
            "contracts",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("contract_number", sa.String(length=50), nullable=False, unique=True),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("customer_id", sa.String(length=100), nullable=True),
            sa.Column("staff_id", sa.String(length=100), nullable=True),
            sa.Column("total_value", sa.Numeric(14, 2), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("status", sa.String(length=40), nullable=False, server_default="DRAFT"),
            sa.Column("digital_signed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("signed_at", sa.DateTime(), nullable=True),
            sa.Column("signed_by", sa.String(length=255), nullable=True),
            sa.Column("is_hidden", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("created_by", sa.String(length=100), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        )
        op.create_index("ix_contracts_customer_id", "contracts", ["customer_id"])
        op.create_index("ix_contracts_staff_id", "contracts", ["staff_id"])
        op.create_index("ix_contracts_status", "contracts", ["status"])

    if "contract_line_items" not in existing:
        op.create_table(
            "contract_line_items",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("contract_id", sa.String(), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("description", sa.String(length=500), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("unit_price", sa.Numeric(14, 2), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["contract_id"], ["contracts.id"]),
        )
        op.create_index(
            "ix_contract_line_items_contract_id", "contract_line_items", ["contract_id"]
        )

    if "digital_signature_records" not in existing:
        op.create_table(
            "digital_signature_records",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("contract_id", sa.String(), nullable=False),
            sa.Column("certificate_id", sa.String(), nullable=True),
            sa.Column("signer_type", sa.String(length=20), nullable=False),
            sa.Column("signer_id", sa.String(length=100), nullable=False),
            sa.Column("signer_name", sa.String(length=255), nullable=False),
            sa.Column("signer_email", sa.String(length=255), nullable=True),
            sa.Column("signature_algorithm", sa.String(length=50), nullable=True),
            sa.Column("signature_value", sa.LargeBinary(), nullable=True),
            sa.Column("signature_hash", sa.String(length=128), nullable=False),
            sa.Column("hash_algorithm", sa.String(length=20), nullable=False, server_default="SHA-256"),
            sa.Column("signature_image_data", sa.LargeBinary(), nullable=True),
            sa.Column("signature_image_width", sa.Integer(), nullable=True),
            sa.Column("signature_image_height", sa.Integer(), nullable=True),
            sa.Column("page_number", sa.Integer(), nullable=True),
            sa.Column("signature_x", sa.Integer(), nullable=True),
            sa.Column("signature_y", sa.Integer(), nullable=True),
            sa.Column("signature_width", sa.Integer(), nullable=True),
            sa.Column("signature_height", sa.Integer(), nullable=True),
            sa.Column("signature_field_name", sa.String(length=100), nullable=True),
            sa.Column("timestamp_token", sa.LargeBinary(), nullable=True),
            sa.Column("timestamp_url", sa.String(length=500), nullable=True),
            sa.Column("signature_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("certificate_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("timestamp_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column(
                "status",
                sa.String(length=30),
                nullable=False,
                server_default="PENDING_VERIFICATION",
            ),
            sa.Column(
                "verification_errors",
                sa.JSON().with_variant(postgresql.JSONB, "postgresql"),
                nullable=True,
            ),
            sa.Column("last_verified_at", sa.DateTime(), nullable=True),
            sa.Column("reason", sa.String(length=500), nullable=True),
            sa.Column("location", sa.String(length=255), nullable=True),
            sa.Column("contact_info", sa.String(length=255), nullable=True),
            sa.Column("ip_address", sa.String(length=100), nullable=True),
            sa.Column("user_agent", sa.Text(), nullable=True),
            sa.Column("signed_at", sa.DateTime(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["contract_id"], ["contracts.id"]),
            sa.ForeignKeyConstraint(["certificate_id"], ["digital_certificates.id"]),
        )
        op.create_index(
            "ix_digital_signature_records_contract_id", "digital_signature_records", ["contract_id"]
        )
        op.create_index(
            "ix_digital_signature_records_certificate_id",
            "digital_signature_records",
            ["certificate_id"],
        )
        op.create_index(
            "ix_digital_signature_records_status", "digital_signature_records", ["status"]
        )
        op.create_index(
            "ix_digital_signature_records_signed_at", "digital_signature_records", ["signed_at"]
        )

    if "contract_history" not in existing:
        op.create_table(
            "contract_history",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("contract_id", sa.String(), nullable=False),
            sa.Column("action", sa.String(length=40), nullable=False),
            sa.Column("old_status", sa.String(length=40), nullable=True),
            sa.Column("new_status", sa.String(length=40), nullable=True),
            sa.Column("changed_by", sa.String(length=255), nullable=False),
            sa.Column("change_reason", sa.Text(), nullable=True),
            sa.Column("changed_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["contract_id"], ["contracts.id"]),
        )
        op.create_index("ix_contract_history_contract_id", "contract_history", ["contract_id"])
        op.create_index("ix_contract_history_action", "contract_history", ["action"])
        op.create_index("ix_contract_history_changed_at", "contract_history", ["changed_at"])


def downgrade() -> None:
    op.drop_table("contract_history")
    op.drop_table("digital_signature_records")
    op.drop_table("contract_line_items")
    op.drop_table("contracts")
    op.drop_table("digital_certificates")
