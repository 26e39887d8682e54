"""
Majime - 仓储库存分配与订单履约核心
"""
__version__ = "1.0.0"
