"""Create settlement tables

Revision ID: 001_settlement
Revises:
Create Date: 2026-10-18

Tables:
- merchants, rate_cards
- billing_cycles, billing_cycle_shipments
- wallet_transactions (append-only ledger)
- shipments
- invoices, invoice_lines, invoice_adjustments
- tracking_records
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '001_settlement'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, nullable: bool = False, default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(14, 2),
        nullable=nullable,
        server_default=sa.text('0') if default else None,
    )


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create the settlement schema."""

    # ==================== merchants ====================
    op.create_table(
        'merchants',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('merchant_code', sa.String(30), nullable=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('tier', sa.String(30), nullable=False, server_default='NEW_USER'),
        sa.Column('gstin', sa.String(15), nullable=True),
        sa.Column('billing_state', sa.String(100), nullable=True),
        sa.Column('billing_state_code', sa.String(2), nullable=True),
        sa.Column('pickup_state_code', sa.String(2), nullable=True),
        sa.Column('pickup_pincode', sa.String(10), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_merchants_merchant_code', 'merchants', ['merchant_code'], unique=True)

    # ==================== rate_cards ====================
    op.create_table(
        'rate_cards',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('tier', sa.String(30), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('forward_slabs', sa.JSON(), nullable=False),
        sa.Column('rto_slabs', sa.JSON(), nullable=False),
        sa.Column('cod_rule', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_rate_cards_tier', 'rate_cards', ['tier'], unique=True)

    # ==================== billing_cycles ====================
    op.create_table(
        'billing_cycles',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('cycle_code', sa.String(40), nullable=False),
        sa.Column('merchant_id', UUID(as_uuid=True),
                  sa.ForeignKey('merchants.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('cycle_number', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='OPEN'),
        sa.Column('total_shipments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('in_transit_shipments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('delivered_shipments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rto_shipments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cancelled_shipments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lost_shipments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('prepaid_shipments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cod_shipments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_declared_weight_grams', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_charged_weight_grams', sa.Integer(), nullable=False, server_default='0'),
        _money('total_forward_charges'),
        _money('total_rto_charges'),
        _money('total_cod_charges'),
        _money('total_weight_discrepancy_charges'),
        _money('total_cod_amount'),
        sa.Column('zone_distribution', sa.JSON(), nullable=False),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('invoiced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('invoice_id', UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('merchant_id', 'year', 'month', 'cycle_number', name='uq_billing_cycle_period'),
    )
    op.create_index('ix_billing_cycles_cycle_code', 'billing_cycles', ['cycle_code'])
    op.create_index('ix_billing_cycles_merchant_id', 'billing_cycles', ['merchant_id'])
    op.create_index('ix_billing_cycles_status', 'billing_cycles', ['status'])
    op.create_index('ix_billing_cycle_status_end', 'billing_cycles', ['status', 'end_date'])

    # ==================== wallet_transactions ====================
    op.create_table(
        'wallet_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('transaction_number', sa.String(40), nullable=False),
        sa.Column('merchant_id', UUID(as_uuid=True),
                  sa.ForeignKey('merchants.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(10), nullable=False),
        sa.Column('category', sa.String(30), nullable=False),
        _money('amount', default=False),
        _money('opening_balance', default=False),
        _money('closing_balance', default=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('reference_number', sa.String(100), nullable=True),
        sa.Column('shipment_id', UUID(as_uuid=True), nullable=True),
        sa.Column('awb_number', sa.String(100), nullable=True),
        sa.Column('weight_grams', sa.Integer(), nullable=True),
        sa.Column('zone', sa.String(1), nullable=True),
        sa.Column('reversal_of_id', UUID(as_uuid=True),
                  sa.ForeignKey('wallet_transactions.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('merchant_id', 'sequence', name='uq_wallet_txn_merchant_sequence'),
        sa.UniqueConstraint('reversal_of_id', name='uq_wallet_txn_reversal_of'),
    )
    op.create_index('ix_wallet_transactions_transaction_number', 'wallet_transactions',
                    ['transaction_number'], unique=True)
    op.create_index('ix_wallet_transactions_merchant_id', 'wallet_transactions', ['merchant_id'])
    op.create_index('ix_wallet_transactions_category', 'wallet_transactions', ['category'])
    op.create_index('ix_wallet_transactions_shipment_id', 'wallet_transactions', ['shipment_id'])
    op.create_index('ix_wallet_transactions_awb_number', 'wallet_transactions', ['awb_number'])
    op.create_index('ix_wallet_txn_merchant_created', 'wallet_transactions', ['merchant_id', 'created_at'])

    # ==================== shipments ====================
    op.create_table(
        'shipments',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('merchant_id', UUID(as_uuid=True),
                  sa.ForeignKey('merchants.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('awb_number', sa.String(100), nullable=False),
        sa.Column('order_reference', sa.String(100), nullable=True),
        sa.Column('direction', sa.String(10), nullable=False, server_default='FORWARD'),
        sa.Column('zone', sa.String(1), nullable=False),
        sa.Column('tier', sa.String(30), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='NEW'),
        sa.Column('payment_mode', sa.String(10), nullable=False, server_default='PREPAID'),
        _money('cod_amount'),
        sa.Column('declared_weight_grams', sa.Integer(), nullable=False),
        sa.Column('volumetric_weight_grams', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('charged_weight_grams', sa.Integer(), nullable=False),
        sa.Column('carrier_weight_grams', sa.Integer(), nullable=True),
        sa.Column('length_cm', sa.Numeric(10, 2), nullable=True),
        sa.Column('width_cm', sa.Numeric(10, 2), nullable=True),
        sa.Column('height_cm', sa.Numeric(10, 2), nullable=True),
        sa.Column('pickup_pincode', sa.String(10), nullable=True),
        sa.Column('delivery_pincode', sa.String(10), nullable=True),
        _money('forward_charge'),
        _money('cod_charge'),
        _money('rto_charge'),
        _money('weight_discrepancy_charge'),
        _money('total_charge'),
        sa.Column('billing_cycle_id', UUID(as_uuid=True),
                  sa.ForeignKey('billing_cycles.id', ondelete='SET NULL'), nullable=True),
        sa.Column('charge_transaction_id', UUID(as_uuid=True),
                  sa.ForeignKey('wallet_transactions.id', ondelete='SET NULL'), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('booked_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_shipments_merchant_id', 'shipments', ['merchant_id'])
    op.create_index('ix_shipments_awb_number', 'shipments', ['awb_number'], unique=True)
    op.create_index('ix_shipments_order_reference', 'shipments', ['order_reference'])
    op.create_index('ix_shipments_status', 'shipments', ['status'])
    op.create_index('ix_shipments_billing_cycle_id', 'shipments', ['billing_cycle_id'])
    op.create_index('ix_shipments_booked_at', 'shipments', ['booked_at'])

    # ==================== billing_cycle_shipments ====================
    op.create_table(
        'billing_cycle_shipments',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('billing_cycle_id', UUID(as_uuid=True),
                  sa.ForeignKey('billing_cycles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('shipment_id', UUID(as_uuid=True),
                  sa.ForeignKey('shipments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('awb_number', sa.String(100), nullable=False),
        sa.Column('added_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('shipment_id', name='uq_billing_cycle_shipment'),
    )
    op.create_index('ix_billing_cycle_shipments_billing_cycle_id', 'billing_cycle_shipments',
                    ['billing_cycle_id'])

    # ==================== invoices ====================
    op.create_table(
        'invoices',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('invoice_number', sa.String(40), nullable=False),
        sa.Column('merchant_id', UUID(as_uuid=True),
                  sa.ForeignKey('merchants.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('billing_cycle_id', UUID(as_uuid=True),
                  sa.ForeignKey('billing_cycles.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('merchant_sequence', sa.Integer(), nullable=False),
        sa.Column('cycle_code', sa.String(40), nullable=False),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('invoice_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='GENERATED'),
        sa.Column('seller_gstin', sa.String(15), nullable=False),
        sa.Column('buyer_gstin', sa.String(15), nullable=True),
        sa.Column('place_of_supply', sa.String(2), nullable=False),
        sa.Column('place_of_supply_name', sa.String(100), nullable=True),
        sa.Column('is_igst', sa.Boolean(), nullable=False),
        sa.Column('sac_code', sa.String(10), nullable=False),
        _money('forward_charges', default=False),
        _money('rto_charges', default=False),
        _money('cod_charges', default=False),
        _money('weight_discrepancy_charges', default=False),
        _money('subtotal', default=False),
        sa.Column('cgst_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        _money('cgst_amount'),
        sa.Column('sgst_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        _money('sgst_amount'),
        sa.Column('igst_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        _money('igst_amount'),
        _money('total_tax', default=False),
        _money('grand_total', default=False),
        sa.Column('total_shipments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('delivered_shipments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rto_shipments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cancelled_shipments', sa.Integer(), nullable=False, server_default='0'),
        _money('total_cod_amount'),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='PENDING'),
        _money('amount_paid'),
        _money('balance_due', default=False),
        sa.Column('payment_method', sa.String(30), nullable=True),
        sa.Column('payment_reference', sa.String(100), nullable=True),
        sa.Column('payment_notes', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('billing_cycle_id', name='uq_invoice_billing_cycle'),
        sa.UniqueConstraint('merchant_id', 'invoice_number', name='uq_invoice_merchant_number'),
        sa.UniqueConstraint('merchant_id', 'merchant_sequence', name='uq_invoice_merchant_sequence'),
    )
    op.create_index('ix_invoices_invoice_number', 'invoices', ['invoice_number'])
    op.create_index('ix_invoices_merchant_id', 'invoices', ['merchant_id'])
    op.create_index('ix_invoices_payment_status', 'invoices', ['payment_status'])
    op.create_index('ix_invoice_merchant_date', 'invoices', ['merchant_id', 'invoice_date'])

    # ==================== invoice_lines ====================
    op.create_table(
        'invoice_lines',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('invoice_id', UUID(as_uuid=True),
                  sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('shipment_id', UUID(as_uuid=True), nullable=False),
        sa.Column('awb_number', sa.String(100), nullable=False),
        sa.Column('order_reference', sa.String(100), nullable=True),
        sa.Column('shipment_status', sa.String(30), nullable=False),
        sa.Column('zone', sa.String(1), nullable=False),
        sa.Column('payment_mode', sa.String(10), nullable=False),
        sa.Column('declared_weight_grams', sa.Integer(), nullable=False),
        sa.Column('charged_weight_grams', sa.Integer(), nullable=False),
        sa.Column('pickup_pincode', sa.String(10), nullable=True),
        sa.Column('delivery_pincode', sa.String(10), nullable=True),
        _money('forward_charge', default=False),
        _money('rto_charge', default=False),
        _money('cod_charge', default=False),
        _money('weight_discrepancy_charge', default=False),
        _money('total_charge', default=False),
        _money('cod_amount'),
    )
    op.create_index('ix_invoice_lines_invoice_id', 'invoice_lines', ['invoice_id'])

    # ==================== invoice_adjustments ====================
    op.create_table(
        'invoice_adjustments',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('invoice_id', UUID(as_uuid=True),
                  sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('note_number', sa.String(50), nullable=False),
        sa.Column('note_type', sa.String(20), nullable=False),
        _money('amount', default=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('awb_number', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('invoice_id', 'note_number', name='uq_invoice_adjustment_number'),
    )
    op.create_index('ix_invoice_adjustments_invoice_id', 'invoice_adjustments', ['invoice_id'])

    # ==================== tracking_records ====================
    op.create_table(
        'tracking_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('shipment_id', UUID(as_uuid=True),
                  sa.ForeignKey('shipments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('merchant_id', UUID(as_uuid=True),
                  sa.ForeignKey('merchants.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('awb_number', sa.String(100), nullable=False),
        sa.Column('current_status', sa.String(30), nullable=False),
        sa.Column('carrier_status', sa.String(100), nullable=True),
        sa.Column('status_history', sa.JSON(), nullable=False),
        sa.Column('is_tracking_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_tracked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tracking_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tracking_failures', sa.JSON(), nullable=False),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rto_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lost_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('shipment_id', name='uq_tracking_record_shipment'),
    )
    op.create_index('ix_tracking_records_merchant_id', 'tracking_records', ['merchant_id'])
    op.create_index('ix_tracking_records_awb_number', 'tracking_records', ['awb_number'], unique=True)
    op.create_index('ix_tracking_active_last', 'tracking_records', ['is_tracking_active', 'last_tracked_at'])


def downgrade() -> None:
    """Drop the settlement schema."""
    op.drop_table('tracking_records')
    op.drop_table('invoice_adjustments')
    op.drop_table('invoice_lines')
    op.drop_table('invoices')
    op.drop_table('billing_cycle_shipments')
    op.drop_table('shipments')
    op.drop_table('wallet_transactions')
    op.drop_table('billing_cycles')
    op.drop_table('rate_cards')
    op.drop_table('merchants')
