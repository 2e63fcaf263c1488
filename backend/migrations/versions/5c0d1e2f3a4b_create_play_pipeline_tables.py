"""create user, shop, game_session, discount and play_counter tables

Revision ID: 5c0d1e2f3a4b
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c0d1e2f3a4b'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'user' not in existing_tables:
        op.create_table(
            'user',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('username', sa.String(length=64), nullable=False),
            sa.Column('password_hash', sa.String(length=128), nullable=False),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_user_username', 'user', ['username'], unique=True)

    if 'shop' not in existing_tables:
        op.create_table(
            'shop',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('shop_domain', sa.String(length=255), nullable=False),
            sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('settings', sa.Text(), nullable=True),
            sa.Column('access_token', sa.String(length=255), nullable=True),
            sa.Column('installed_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_shop_shop_domain', 'shop', ['shop_domain'], unique=True)

    if 'game_session' not in existing_tables:
        op.create_table(
            'game_session',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('session_id', sa.String(length=64), nullable=False),
            sa.Column('shop_domain', sa.String(length=255), nullable=False),
            sa.Column('customer_id', sa.String(length=64), nullable=True),
            sa.Column('customer_email', sa.String(length=255), nullable=True),
            sa.Column('customer_key', sa.String(length=255), nullable=True),
            sa.Column('state', sa.String(length=16), nullable=False, server_default='pending'),
            sa.Column('source', sa.String(length=32), nullable=True),
            sa.Column('referrer', sa.String(length=1024), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('final_score', sa.Integer(), nullable=True),
            sa.Column('discount_percent', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('discount_code', sa.String(length=64), nullable=True),
            sa.Column('issuance', sa.String(length=16), nullable=False, server_default='none'),
            sa.Column('telemetry', sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_game_session_session_id', 'game_session', ['session_id'], unique=True)
        op.create_index('ix_game_session_shop_domain', 'game_session', ['shop_domain'])
        op.create_index('ix_game_session_state', 'game_session', ['state'])
        op.create_index('ix_game_session_created_at', 'game_session', ['created_at'])

    if 'discount' not in existing_tables:
        op.create_table(
            'discount',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('shop_domain', sa.String(length=255), nullable=False),
            sa.Column('code', sa.String(length=64), nullable=False),
            sa.Column('session_id', sa.String(length=64), nullable=False),
            sa.Column('percent', sa.Integer(), nullable=False),
            sa.Column('tier_min_score', sa.Integer(), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
            sa.Column('price_rule_id', sa.String(length=64), nullable=True),
            sa.Column('platform_discount_id', sa.String(length=64), nullable=True),
            sa.Column('customer_id', sa.String(length=64), nullable=True),
            sa.Column('customer_email', sa.String(length=255), nullable=True),
            sa.Column('is_used', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('used_at', sa.DateTime(), nullable=True),
            sa.Column('order_id', sa.String(length=64), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('expires_at', sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(['session_id'], ['game_session.session_id']),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('shop_domain', 'code', name='uq_discount_shop_code'),
            sa.UniqueConstraint('session_id'),
        )
        op.create_index('ix_discount_shop_domain', 'discount', ['shop_domain'])

    if 'play_counter' not in existing_tables:
        op.create_table(
            'play_counter',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('shop_domain', sa.String(length=255), nullable=False),
            sa.Column('customer_key', sa.String(length=255), nullable=False),
            sa.Column('period', sa.String(length=10), nullable=False),
            sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('shop_domain', 'customer_key', 'period', name='uq_play_counter_key'),
        )
        op.create_index('ix_play_counter_shop_domain', 'play_counter', ['shop_domain'])


def downgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    # Children before parents
    for table in ('play_counter', 'discount', 'game_session', 'shop', 'user'):
        if table in existing_tables:
            op.drop_table(table)
