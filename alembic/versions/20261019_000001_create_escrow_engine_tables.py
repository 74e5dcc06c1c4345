"""Create escrow engine tables

Revision ID: 20261019_000001
Revises: None
Create Date: 2026-10-19

Creates contracts, milestones, escrow accounts/entries, payouts,
invoices and the per-contract activity stream.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261019_000001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, nullable: bool = False, **kwargs) -> sa.Column:
    return sa.Column(name, sa.Numeric(precision=12, scale=2), nullable=nullable, **kwargs)


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    """Create all engine tables."""
    op.create_table(
        'contracts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('proposal_id', sa.String(length=100), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('freelancer_id', sa.Integer(), nullable=False),
        _money('total_amount'),
        sa.Column(
            'status',
            sa.Enum('ACTIVE', 'COMPLETED', 'CANCELLED', 'DISPUTED', name='contract_status'),
            nullable=False,
            server_default='ACTIVE'
        ),
        sa.Column('cancel_reason', sa.String(length=500), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('proposal_id', name='uq_contracts_proposal_id'),
    )
    op.create_index('ix_contracts_client_id', 'contracts', ['client_id'])
    op.create_index('ix_contracts_freelancer_id', 'contracts', ['freelancer_id'])
    op.create_index('ix_contracts_status', 'contracts', ['status'])

    op.create_table(
        'milestones',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('contract_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        _money('amount'),
        sa.Column('deadline', sa.Date(), nullable=True),
        sa.Column(
            'status',
            sa.Enum(
                'UPCOMING', 'FUNDED', 'SUBMITTED', 'REQUESTED_CHANGES', 'APPROVED', 'RELEASED', 'CANCELLED',
                name='milestone_status'
            ),
            nullable=False,
            server_default='UPCOMING'
        ),
        sa.Column('artifact_ref', sa.String(length=1000), nullable=True),
        sa.Column('change_note', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['contract_id'],
            ['contracts.id'],
            name='fk_milestones_contract_id',
            ondelete='CASCADE'
        ),
        sa.UniqueConstraint('contract_id', 'position', name='uq_milestones_contract_position'),
        sa.CheckConstraint('amount > 0', name='ck_milestones_positive_amount'),
    )
    op.create_index('ix_milestones_contract_id', 'milestones', ['contract_id'])
    op.create_index('ix_milestones_status', 'milestones', ['status'])

    op.create_table(
        'escrow_accounts',
        sa.Column('contract_id', sa.Integer(), nullable=False),
        _money('locked_total', server_default='0'),
        _money('released_total', server_default='0'),
        _money('refunded_total', server_default='0'),
        _money('funded_total', server_default='0'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('contract_id'),
        sa.ForeignKeyConstraint(
            ['contract_id'],
            ['contracts.id'],
            name='fk_escrow_accounts_contract_id',
            ondelete='CASCADE'
        ),
    )

    op.create_table(
        'escrow_entries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('contract_id', sa.Integer(), nullable=False),
        sa.Column('milestone_id', sa.Integer(), nullable=False),
        sa.Column(
            'kind',
            sa.Enum('LOCK', 'RELEASE', 'REFUND', name='escrow_entry_kind'),
            nullable=False
        ),
        _money('amount'),
        sa.Column('freelancer_id', sa.Integer(), nullable=False),
        sa.Column('capture_ref', sa.String(length=255), nullable=True),
        sa.Column('transaction_hash', sa.String(length=64), nullable=False),
        sa.Column('previous_hash', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['contract_id'], ['contracts.id'], name='fk_escrow_entries_contract_id'),
        sa.ForeignKeyConstraint(['milestone_id'], ['milestones.id'], name='fk_escrow_entries_milestone_id'),
        sa.UniqueConstraint('milestone_id', 'kind', name='uq_escrow_entries_milestone_kind'),
        sa.UniqueConstraint('transaction_hash', name='uq_escrow_entries_transaction_hash'),
    )
    op.create_index('ix_escrow_entries_contract_id', 'escrow_entries', ['contract_id'])
    op.create_index('ix_escrow_entries_milestone_id', 'escrow_entries', ['milestone_id'])
    op.create_index('ix_escrow_entries_kind', 'escrow_entries', ['kind'])
    op.create_index('ix_escrow_entries_freelancer_id', 'escrow_entries', ['freelancer_id'])
    op.create_index('ix_escrow_entries_previous_hash', 'escrow_entries', ['previous_hash'])

    op.create_table(
        'payouts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('freelancer_id', sa.Integer(), nullable=False),
        _money('gross_amount', server_default='0'),
        _money('fee_amount', nullable=True),
        _money('net_amount', nullable=True),
        sa.Column(
            'status',
            sa.Enum('QUEUED', 'PROCESSING', 'RETRY_PENDING', 'SETTLED', 'FAILED', name='payout_status'),
            nullable=False,
            server_default='QUEUED'
        ),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=64), nullable=True),
        sa.Column('rail_transaction_id', sa.String(length=255), nullable=True),
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key', name='uq_payouts_idempotency_key'),
    )
    op.create_index('ix_payouts_freelancer_id', 'payouts', ['freelancer_id'])
    op.create_index('ix_payouts_status', 'payouts', ['status'])
    op.create_index('ix_payouts_next_attempt_at', 'payouts', ['next_attempt_at'])

    op.create_table(
        'payout_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payout_id', sa.Integer(), nullable=False),
        sa.Column('milestone_id', sa.Integer(), nullable=False),
        sa.Column('contract_id', sa.Integer(), nullable=False),
        sa.Column('release_entry_id', sa.Integer(), nullable=False),
        _money('amount'),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['payout_id'],
            ['payouts.id'],
            name='fk_payout_items_payout_id',
            ondelete='CASCADE'
        ),
        sa.ForeignKeyConstraint(['milestone_id'], ['milestones.id'], name='fk_payout_items_milestone_id'),
        sa.ForeignKeyConstraint(['contract_id'], ['contracts.id'], name='fk_payout_items_contract_id'),
        sa.ForeignKeyConstraint(
            ['release_entry_id'],
            ['escrow_entries.id'],
            name='fk_payout_items_release_entry_id'
        ),
        sa.UniqueConstraint('payout_id', 'milestone_id', name='uq_payout_items_payout_milestone'),
    )
    op.create_index('ix_payout_items_payout_id', 'payout_items', ['payout_id'])
    op.create_index('ix_payout_items_milestone_id', 'payout_items', ['milestone_id'])
    op.create_index('ix_payout_items_contract_id', 'payout_items', ['contract_id'])

    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('contract_id', sa.Integer(), nullable=False),
        sa.Column('milestone_id', sa.Integer(), nullable=True),
        sa.Column('payout_id', sa.Integer(), nullable=True),
        sa.Column('corrects_invoice_id', sa.Integer(), nullable=True),
        sa.Column(
            'kind',
            sa.Enum('MILESTONE', 'CONTRACT_COMPLETION', 'COMPENSATING', name='invoice_kind'),
            nullable=False
        ),
        sa.Column('trigger_ref', sa.String(length=100), nullable=False),
        _money('gross_amount'),
        _money('fee_amount'),
        _money('net_amount'),
        sa.Column('breakdown', sa.JSON(), nullable=False),
        sa.Column('invoice_hash', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['contract_id'], ['contracts.id'], name='fk_invoices_contract_id'),
        sa.ForeignKeyConstraint(['milestone_id'], ['milestones.id'], name='fk_invoices_milestone_id'),
        sa.ForeignKeyConstraint(['payout_id'], ['payouts.id'], name='fk_invoices_payout_id'),
        sa.ForeignKeyConstraint(
            ['corrects_invoice_id'],
            ['invoices.id'],
            name='fk_invoices_corrects_invoice_id'
        ),
        sa.UniqueConstraint('trigger_ref', name='uq_invoices_trigger_ref'),
        sa.UniqueConstraint('invoice_hash', name='uq_invoices_invoice_hash'),
    )
    op.create_index('ix_invoices_contract_id', 'invoices', ['contract_id'])
    op.create_index('ix_invoices_milestone_id', 'invoices', ['milestone_id'])
    op.create_index('ix_invoices_payout_id', 'invoices', ['payout_id'])
    op.create_index('ix_invoices_kind', 'invoices', ['kind'])

    op.create_table(
        'activity_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('contract_id', sa.Integer(), nullable=False),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['contract_id'],
            ['contracts.id'],
            name='fk_activity_events_contract_id',
            ondelete='CASCADE'
        ),
        sa.UniqueConstraint('contract_id', 'seq', name='uq_activity_events_contract_seq'),
    )
    op.create_index('ix_activity_events_contract_id', 'activity_events', ['contract_id'])
    op.create_index('ix_activity_events_kind', 'activity_events', ['kind'])


def downgrade() -> None:
    """Drop all engine tables in reverse dependency order."""
    op.drop_table('activity_events')
    op.drop_table('invoices')
    op.drop_table('payout_items')
    op.drop_table('payouts')
    op.drop_table('escrow_entries')
    op.drop_table('escrow_accounts')
    op.drop_table('milestones')
    op.drop_table('contracts')
