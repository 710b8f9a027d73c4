"""create order and payment lifecycle tables

Revision ID: 3f1c0a9b7d21
Revises:
Create Date: 2026-10-19 10:12:04.118302

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c0a9b7d21'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name, nullable=False, **kw):
    return sa.Column(name, sa.Numeric(12, 2), nullable=nullable, **kw)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'user',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('first_name', sa.String(), nullable=False),
        sa.Column('last_name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('phone_number', sa.String(), nullable=True),
        sa.Column('role', sa.String(), nullable=False, server_default='user'),
        sa.Column('can_login', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_user_email', 'user', ['email'])

    op.create_table(
        'product',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('category_name', sa.String(), nullable=True),
        sa.Column('image', sa.String(), nullable=True),
        _money('price'),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('stock >= 0', name='ck_product_stock_non_negative'),
    )

    op.create_table(
        'pending_order',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('line_items', sa.JSON(), nullable=False),
        _money('subtotal'),
        _money('discount', server_default='0'),
        _money('credits', server_default='0'),
        _money('total'),
        sa.Column('currency', sa.String(), nullable=False, server_default='INR'),
        sa.Column('delivery_address', sa.JSON(), nullable=False),
        sa.Column('delivery_notes', sa.String(), nullable=True),
        sa.Column('payment_reference', sa.String(), nullable=False),
        sa.Column('payment_session_id', sa.String(), nullable=True),
        sa.Column('payment_session_url', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='initialized'),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('converted_order_id', sa.Integer(), nullable=True),
        sa.Column('converted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_pending_order_user_id', 'pending_order', ['user_id'])
    op.create_index('ix_pending_order_payment_reference', 'pending_order', ['payment_reference'], unique=True)
    op.create_index('ix_pending_order_status', 'pending_order', ['status'])
    op.create_index('ix_pending_order_expires_at', 'pending_order', ['expires_at'])

    op.create_table(
        'order',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_code', sa.String(), nullable=False),
        sa.Column('invoice_number', sa.String(), nullable=False),
        sa.Column('payment_reference', sa.String(), nullable=False),
        sa.Column('pending_order_id', sa.String(), sa.ForeignKey('pending_order.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(), nullable=False, server_default='pending'),
        _money('subtotal'),
        _money('discount', server_default='0'),
        _money('credits', server_default='0'),
        _money('total'),
        sa.Column('currency', sa.String(), nullable=False, server_default='INR'),
        sa.Column('delivery_address', sa.JSON(), nullable=False),
        sa.Column('delivery_notes', sa.String(), nullable=True),
        sa.Column('invoice_pdf_url', sa.String(), nullable=True),
        sa.Column('invoice_image_url', sa.String(), nullable=True),
        sa.Column('invoice_qr_payload', sa.String(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('shipped_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('pending_order_id', name='uq_order_pending_order_id'),
    )
    # payment_reference uniqueness is what makes finalize exactly-once
    op.create_index('ix_order_payment_reference', 'order', ['payment_reference'], unique=True)
    op.create_index('ix_order_order_code', 'order', ['order_code'], unique=True)
    op.create_index('ix_order_invoice_number', 'order', ['invoice_number'], unique=True)
    op.create_index('ix_order_user_id', 'order', ['user_id'])
    op.create_index('ix_order_status', 'order', ['status'])
    op.create_index('ix_order_payment_status', 'order', ['payment_status'])

    op.create_table(
        'order_item',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('order.id'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('product.id'), nullable=False),
        sa.Column('product_name', sa.String(), nullable=False),
        _money('unit_price'),
        sa.Column('quantity', sa.Integer(), nullable=False),
        _money('line_total'),
    )
    op.create_index('ix_order_item_order_id', 'order_item', ['order_id'])
    op.create_index('ix_order_item_product_id', 'order_item', ['product_id'])

    op.create_table(
        'payment_transaction',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('reference', sa.String(), nullable=False),
        sa.Column('kind', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        _money('amount', nullable=True),
        sa.Column('provider', sa.String(), nullable=False, server_default='razorpay'),
        sa.Column('provider_event', sa.String(), nullable=True),
        sa.Column('provider_response', sa.JSON(), nullable=True),
        sa.Column('pending_order_id', sa.String(), nullable=True),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_payment_transaction_reference', 'payment_transaction', ['reference'])
    op.create_index('ix_payment_transaction_kind', 'payment_transaction', ['kind'])
    op.create_index('ix_payment_transaction_pending_order_id', 'payment_transaction', ['pending_order_id'])
    op.create_index('ix_payment_transaction_order_id', 'payment_transaction', ['order_id'])
    op.create_index('ix_payment_transaction_user_id', 'payment_transaction', ['user_id'])

    op.create_table(
        'order_status_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('order.id'), nullable=False),
        sa.Column('old_status', sa.String(), nullable=True),
        sa.Column('new_status', sa.String(), nullable=False),
        sa.Column('actor', sa.String(), nullable=False, server_default='system'),
        sa.Column('reason', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_order_status_history_order_id', 'order_status_history', ['order_id'])

    op.create_table(
        'payment_review',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('payment_reference', sa.String(), nullable=False),
        sa.Column('pending_order_id', sa.String(), sa.ForeignKey('pending_order.id'), nullable=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('order.id'), nullable=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('reason', sa.String(), nullable=False),
        _money('amount', nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='open'),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('resolution_note', sa.String(), nullable=True),
        sa.Column('resolved_by', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('payment_reference', 'reason', name='uq_payment_review_reference_reason'),
    )
    op.create_index('ix_payment_review_payment_reference', 'payment_review', ['payment_reference'])
    op.create_index('ix_payment_review_status', 'payment_review', ['status'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('payment_review')
    op.drop_table('order_status_history')
    op.drop_table('payment_transaction')
    op.drop_table('order_item')
    op.drop_table('order')
    op.drop_table('pending_order')
    op.drop_table('product')
    op.drop_table('user')
