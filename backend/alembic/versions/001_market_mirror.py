"""Market mirror schema

Revision ID: 001_market_mirror
Revises:
Create Date: 2026-10-18

Implements:
- raw_events: every delivered event, unique on (tx_signature, event_type)
- markets / users / positions / trades: mirrored program state
- proposals / resolutions / disputes: governance records
- finalization_attempts: append-only audit of auto-finalization
- monitor_leases: cross-process run lease
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = '001_market_mirror'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # =========================================================================
    # RAW_EVENTS - Ingestion audit. Never deleted.
    # =========================================================================
    op.create_table(
        'raw_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('tx_signature', sa.String(128), nullable=False),
        sa.Column('slot', sa.BigInteger(), nullable=False),
        sa.Column('instruction_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payload', postgresql.JSONB, nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('tx_signature', 'event_type', name='raw_events_signature_type_key'),
    )
    op.create_index('idx_raw_events_unprocessed', 'raw_events', ['processed', 'slot'],
                    postgresql_where=sa.text('processed = false'))

    # =========================================================================
    # MARKETS - Written only by the ingestion pipeline
    # =========================================================================
    op.create_table(
        'markets',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('address', sa.String(64), nullable=False, unique=True),
        sa.Column('creator', sa.String(64), nullable=True),
        sa.Column('question', sa.Text(), nullable=True),
        sa.Column('liquidity', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('state', sa.String(20), nullable=False, server_default='PROPOSED'),
        sa.Column('proposed_outcome', sa.String(10), nullable=True),
        sa.Column('final_outcome', sa.String(10), nullable=True),
        sa.Column('resolver', sa.String(64), nullable=True),
        sa.Column('resolution_proposed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dispute_deadline_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shares_yes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('shares_no', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_volume', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('trade_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "state IN ('PROPOSED', 'APPROVED', 'ACTIVE', 'RESOLVING', 'DISPUTED', 'FINALIZED', 'CANCELLED')",
            name='markets_state_valid',
        ),
    )
    # Scanner query: state = RESOLVING ORDER BY dispute_deadline_at
    op.create_index('idx_markets_state_deadline', 'markets', ['state', 'dispute_deadline_at'])

    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('wallet', sa.String(64), nullable=False, unique=True),
        sa.Column('total_trades', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_volume', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'positions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('market_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('markets.id'), nullable=False),
        sa.Column('wallet', sa.String(64), nullable=False),
        sa.Column('shares_yes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('shares_no', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_invested', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('has_claimed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('claimed_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('market_id', 'wallet', name='positions_market_wallet_key'),
    )

    op.create_table(
        'trades',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tx_signature', sa.String(128), nullable=False, unique=True),
        sa.Column('market_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('markets.id'), nullable=False),
        sa.Column('wallet', sa.String(64), nullable=False),
        sa.Column('side', sa.String(4), nullable=False),
        sa.Column('outcome', sa.String(10), nullable=False),
        sa.Column('shares', sa.BigInteger(), nullable=False),
        sa.Column('cost', sa.BigInteger(), nullable=False),
        sa.Column('slot', sa.BigInteger(), nullable=False),
        sa.Column('block_time', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("side IN ('BUY', 'SELL')", name='trades_side_valid'),
    )
    op.create_index('idx_trades_market', 'trades', ['market_id'])

    # =========================================================================
    # GOVERNANCE
    # =========================================================================
    op.create_table(
        'proposals',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('proposal_id', sa.String(128), nullable=False, unique=True),
        sa.Column('market_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('markets.id'), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('likes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('dislikes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_votes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'resolutions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('market_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('markets.id'),
                  nullable=False, unique=True),
        sa.Column('resolver', sa.String(64), nullable=True),
        sa.Column('proposed_outcome', sa.String(10), nullable=True),
        sa.Column('resolving_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dispute_deadline_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('disputed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('finalized', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('final_outcome', sa.String(10), nullable=True),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'disputes',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('market_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('markets.id'),
                  nullable=False, unique=True),
        sa.Column('disputer', sa.String(64), nullable=True),
        sa.Column('raised_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('support_votes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reject_votes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('outcome_changed', sa.Boolean(), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
    )

    # =========================================================================
    # MARKET MONITOR
    # =========================================================================
    op.create_table(
        'finalization_attempts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('market_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('markets.id'), nullable=False),
        sa.Column('market_address', sa.String(64), nullable=False),
        sa.Column('run_id', sa.String(64), nullable=True),
        sa.Column('attempted_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('tx_signature', sa.String(128), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('processing_time_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.CheckConstraint(
            "outcome IN ('success', 'dry_run', 'failed', 'rejected', 'timeout')",
            name='finalization_attempts_outcome_valid',
        ),
    )
    op.create_index('idx_finalization_attempts_market', 'finalization_attempts', ['market_id', 'attempted_at'])

    op.create_table(
        'monitor_leases',
        sa.Column('name', sa.String(64), primary_key=True),
        sa.Column('holder', sa.String(128), nullable=True),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('monitor_leases')
    op.drop_index('idx_finalization_attempts_market', table_name='finalization_attempts')
    op.drop_table('finalization_attempts')
    op.drop_table('disputes')
    op.drop_table('resolutions')
    op.drop_table('proposals')
    op.drop_index('idx_trades_market', table_name='trades')
    op.drop_table('trades')
    op.drop_table('positions')
    op.drop_table('users')
    op.drop_index('idx_markets_state_deadline', table_name='markets')
    op.drop_table('markets')
    op.drop_index('idx_raw_events_unprocessed', table_name='raw_events')
    op.drop_table('raw_events')
