"""GST e-invoice core tables

Revision ID: 20261019_0900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20261019_0900'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# SQLAlchemy persists Python enums by member name
invoice_status = sa.Enum(
    'DRAFT', 'VALIDATED', 'SUBMITTING', 'SUBMITTED', 'SUBMISSION_FAILED', 'CANCELLING', 'CANCELLED',
    name='invoicestatus',
)
failure_kind = sa.Enum('TRANSIENT', 'PERMANENT', name='failurekind')
transaction_type = sa.Enum(
    'SUBMIT', 'RETRY', 'CANCEL', 'TEST_CONNECTION', 'RECONCILE',
    name='transactiontype',
)
log_status = sa.Enum('SUCCESS', 'FAILURE', 'PENDING', name='logstatus')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        'master_customer',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('company_name', sa.String(255), nullable=False),
        sa.Column('gstin', sa.String(15), nullable=True, comment='Buyer GSTIN (required for B2B e-invoicing)'),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('address', sa.Text, nullable=True),
        sa.Column('state_name', sa.String(100), nullable=True),
        sa.Column('state_code', sa.String(2), nullable=True),
        sa.Column('pin_code', sa.String(6), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.text('true')),
        *_timestamps(),
    )
    op.create_index('ix_master_customer_gstin', 'master_customer', ['gstin'])

    op.create_table(
        'tax_invoices',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('invoice_no', sa.String(50), nullable=False),
        sa.Column('invoice_date', sa.Date, nullable=False),
        sa.Column(
            'customer_id', sa.Integer,
            sa.ForeignKey('master_customer.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('supply_type', sa.String(10), nullable=False, server_default='B2B'),
        sa.Column('place_supply', sa.String(100), nullable=True),
        sa.Column('grand_total_qty', sa.Numeric(15, 3), nullable=False, server_default='0'),
        sa.Column('grand_total_taxable_amt', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('grand_total_cgst_amt', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('grand_total_sgst_amt', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('grand_total_igst_amt', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('grand_total_amt', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('remarks', sa.Text, nullable=True),
        sa.Column('status', invoice_status, nullable=False, server_default='DRAFT'),

        # GST e-invoicing (IRP)
        sa.Column('irn', sa.String(64), nullable=True, comment='Invoice Reference Number issued by the IRP'),
        sa.Column('ack_no', sa.String(32), nullable=True),
        sa.Column('ack_date', sa.String(32), nullable=True),
        sa.Column('qr_code_url', sa.Text, nullable=True),
        sa.Column('signed_invoice', sa.Text, nullable=True),
        sa.Column('signed_qr_code', sa.Text, nullable=True),
        sa.Column('cancel_date', sa.String(32), nullable=True),
        sa.Column('cancel_reason', sa.String(100), nullable=True),
        sa.Column('cancel_remarks', sa.Text, nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('failure_kind', failure_kind, nullable=True),
        sa.Column('auto_retry_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.DateTime, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('irn', name='uq_tax_invoices_irn'),
    )
    op.create_index('ix_tax_invoices_invoice_no', 'tax_invoices', ['invoice_no'], unique=True)
    op.create_index('ix_tax_invoices_status', 'tax_invoices', ['status'])

    op.create_table(
        'invoice_details',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            'invoice_id', sa.Integer,
            sa.ForeignKey('tax_invoices.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('product_name', sa.String(300), nullable=True),
        sa.Column('product_description', sa.Text, nullable=True),
        sa.Column('hsn_sac_code', sa.String(8), nullable=True),
        sa.Column('unit', sa.String(8), nullable=True),
        sa.Column('is_service', sa.Boolean, nullable=False, server_default=sa.text('false')),
        sa.Column('qty', sa.Numeric(15, 3), nullable=False, server_default='1'),
        sa.Column('rate', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('taxable_amt', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('discount', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('cgst_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('cgst_amt', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('sgst_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('sgst_amt', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('igst_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('igst_amt', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Numeric(15, 2), nullable=False, server_default='0'),
        *_timestamps(),
    )
    op.create_index('ix_invoice_details_invoice_id', 'invoice_details', ['invoice_id'])

    op.create_table(
        'gst_settings',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('setting_key', sa.String(100), nullable=False),
        sa.Column('setting_value', sa.Text, nullable=True),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.text('true')),
        *_timestamps(),
    )
    op.create_index('ix_gst_settings_setting_key', 'gst_settings', ['setting_key'], unique=True)

    # Append-only: no foreign key so the trail outlives invoice deletion
    op.create_table(
        'e_invoice_logs',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('invoice_id', sa.Integer, nullable=True, comment='NULL for connection tests'),
        sa.Column('transaction_type', transaction_type, nullable=False),
        sa.Column('status', log_status, nullable=False),
        sa.Column('api_endpoint', sa.String(255), nullable=True),
        sa.Column('request_payload', sa.JSON, nullable=True),
        sa.Column('response_payload', sa.JSON, nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('error_details', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_e_invoice_logs_invoice_id', 'e_invoice_logs', ['invoice_id'])
    op.create_index('ix_e_invoice_logs_status', 'e_invoice_logs', ['status'])
    op.create_index('ix_e_invoice_logs_created_at', 'e_invoice_logs', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_e_invoice_logs_created_at', table_name='e_invoice_logs')
    op.drop_index('ix_e_invoice_logs_status', table_name='e_invoice_logs')
    op.drop_index('ix_e_invoice_logs_invoice_id', table_name='e_invoice_logs')
    op.drop_table('e_invoice_logs')

    op.drop_index('ix_gst_settings_setting_key', table_name='gst_settings')
    op.drop_table('gst_settings')

    op.drop_index('ix_invoice_details_invoice_id', table_name='invoice_details')
    op.drop_table('invoice_details')

    op.drop_index('ix_tax_invoices_status', table_name='tax_invoices')
    op.drop_index('ix_tax_invoices_invoice_no', table_name='tax_invoices')
    op.drop_table('tax_invoices')

    op.drop_index('ix_master_customer_gstin', table_name='master_customer')
    op.drop_table('master_customer')

    bind = op.get_bind()
    for enum_type in (log_status, transaction_type, failure_kind, invoice_status):
        enum_type.drop(bind, checkfirst=True)
