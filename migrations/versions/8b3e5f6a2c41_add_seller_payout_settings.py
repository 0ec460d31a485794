from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "8b3e5f6a2c41"
down_revision = "4f2a9c1d7e3b"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "seller_payout_settings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("seller_id", sa.String(length=36), nullable=False,
                  unique=True),
        sa.Column(
            "payout_frequency",
            sa.Enum("weekly", "biweekly", "monthly",
                    name="payoutfrequency"),
            nullable=False,
        ),
        sa.Column("min_payout_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("hold_period_days", sa.Integer(), nullable=False),
        sa.Column("dispute_hold_enabled", sa.Boolean(), nullable=False),
        sa.Column("auto_payout_enabled", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def downgrade():
    op.drop_table("seller_payout_settings")
    sa.Enum(name="payoutfrequency").drop(op.get_bind(), checkfirst=True)
