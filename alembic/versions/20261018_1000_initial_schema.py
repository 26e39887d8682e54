"""Initial warehouse and fulfillment schema

Revision ID: initial_schema
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PLACEMENT_STATES = ('inbound', 'available', 'outbound', 'dispatched')
CUSTOM_STATUSES = (
    'New', 'Confirmed', 'Ready To Dispatch', 'Dispatched', 'In Transit', 'Out For Delivery',
    'Delivered', 'RTO In Transit', 'RTO Delivered', 'DTO Requested', 'DTO Booked',
    'DTO In Transit', 'DTO Delivered', 'Pending Refunds', 'DTO Refunded', 'Lost', 'Closed',
    'RTO Closed', 'Cancellation Requested', 'Cancelled',
)

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')
BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')


def _location_columns():
    """库位节点公共列"""
    return [
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('business_id', sa.String(length=64), nullable=False, comment='所属业务'),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('code', sa.String(length=50), nullable=True, comment='库位编码'),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false(), comment='软删除'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_by', sa.String(length=128), nullable=True),
    ]


def upgrade() -> None:
    """Create tenants, location hierarchy, stock units and orders"""

    # 租户
    op.create_table('businesses',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False, comment='业务名称'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='创建时间'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table('stores',
        sa.Column('id', sa.String(length=128), nullable=False, comment='店铺域名或标识'),
        sa.Column('business_id', sa.String(length=64), nullable=False, comment='所属业务'),
        sa.Column('alias', sa.String(length=100), nullable=True, comment='店铺简称'),
        sa.Column('pickup_name', sa.String(length=200), nullable=True, comment='快递揽收点名称'),
        sa.Column('courier_api_key', sa.String(length=200), nullable=True, comment='快递 API 密钥'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_stores_business', 'stores', ['business_id'])

    op.create_table('product_mappings',
        sa.Column('id', BIGINT_PK, autoincrement=True, nullable=False),
        sa.Column('store_id', sa.String(length=128), nullable=False),
        sa.Column('store_product_id', sa.String(length=64), nullable=False, comment='店铺商品ID'),
        sa.Column('store_variant_id', sa.String(length=64), nullable=False, comment='店铺变体ID'),
        sa.Column('business_id', sa.String(length=64), nullable=False),
        sa.Column('business_product_id', sa.String(length=128), nullable=False, comment='业务库存商品ID'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id']),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'store_product_id', 'store_variant_id', name='uq_product_mappings_store_item')
    )
    op.create_index('ix_product_mappings_business_product', 'product_mappings', ['business_id', 'business_product_id'])

    # 库位层级
    op.create_table('warehouses',
        *_location_columns(),
        sa.Column('address', sa.String(length=500), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_warehouses_business', 'warehouses', ['business_id'])

    op.create_table('zones',
        *_location_columns(),
        sa.Column('warehouse_id', sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_zones_business_warehouse', 'zones', ['business_id', 'warehouse_id'])

    op.create_table('racks',
        *_location_columns(),
        sa.Column('warehouse_id', sa.String(length=64), nullable=False),
        sa.Column('zone_id', sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_racks_business_zone', 'racks', ['business_id', 'zone_id'])

    op.create_table('shelves',
        *_location_columns(),
        sa.Column('warehouse_id', sa.String(length=64), nullable=False),
        sa.Column('zone_id', sa.String(length=64), nullable=False),
        sa.Column('rack_id', sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_shelves_business_rack', 'shelves', ['business_id', 'rack_id'])

    # 库存单元
    op.create_table('stock_units',
        sa.Column('id', sa.String(length=64), nullable=False, comment='单元ID（条码）'),
        sa.Column('business_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.String(length=128), nullable=False, comment='业务库存商品ID'),
        sa.Column('warehouse_id', sa.String(length=64), nullable=True),
        sa.Column('zone_id', sa.String(length=64), nullable=True),
        sa.Column('rack_id', sa.String(length=64), nullable=True),
        sa.Column('shelf_id', sa.String(length=64), nullable=True),
        sa.Column('placement_id', sa.String(length=200), nullable=True, comment='{product_id}_{shelf_id}'),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('store_id', sa.String(length=128), nullable=True),
        sa.Column('placement_state', sa.Enum(*PLACEMENT_STATES, name='placement_state', native_enum=False), nullable=False),
        sa.Column('grn_ref', sa.String(length=100), nullable=True, comment='入库单号'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_by', sa.String(length=128), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_stock_units_pick', 'stock_units', ['business_id', 'product_id', 'placement_state', 'created_at'])
    op.create_index('ix_stock_units_order', 'stock_units', ['order_id'])
    op.create_index('ix_stock_units_placement', 'stock_units', ['business_id', 'placement_id'])

    # 订单
    op.create_table('orders',
        sa.Column('id', sa.String(length=64), nullable=False, comment='平台订单ID'),
        sa.Column('store_id', sa.String(length=128), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=True, comment='订单号（展示用）'),
        sa.Column('custom_status', sa.Enum(*CUSTOM_STATUSES, name='custom_status', native_enum=False), nullable=False),
        sa.Column('awb', sa.String(length=64), nullable=True, comment='运单号'),
        sa.Column('courier', sa.String(length=64), nullable=True),
        sa.Column('awb_reverse', sa.String(length=64), nullable=True),
        sa.Column('courier_reverse', sa.String(length=64), nullable=True),
        sa.Column('pickup_ready', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('picked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw', JSON_TYPE, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_orders_store_status', 'orders', ['store_id', 'custom_status'])
    op.create_index('ix_orders_awb', 'orders', ['awb'])

    op.create_table('order_status_logs',
        sa.Column('id', BIGINT_PK, autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_status_logs_order', 'order_status_logs', ['order_id', 'id'])


def downgrade() -> None:
    """Drop all tables"""
    op.drop_index('ix_order_status_logs_order', table_name='order_status_logs')
    op.drop_table('order_status_logs')
    op.drop_index('ix_orders_awb', table_name='orders')
    op.drop_index('ix_orders_store_status', table_name='orders')
    op.drop_table('orders')
    op.drop_index('ix_stock_units_placement', table_name='stock_units')
    op.drop_index('ix_stock_units_order', table_name='stock_units')
    op.drop_index('ix_stock_units_pick', table_name='stock_units')
    op.drop_table('stock_units')
    for table, index in (
        ('shelves', 'ix_shelves_business_rack'),
        ('racks', 'ix_racks_business_zone'),
        ('zones', 'ix_zones_business_warehouse'),
        ('warehouses', 'ix_warehouses_business'),
    ):
        op.drop_index(index, table_name=table)
        op.drop_table(table)
    op.drop_index('ix_product_mappings_business_product', table_name='product_mappings')
    op.drop_table('product_mappings')
    op.drop_index('ix_stores_business', table_name='stores')
    op.drop_table('stores')
    op.drop_table('businesses')
