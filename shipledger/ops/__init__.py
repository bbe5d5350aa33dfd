from shipledger.ops.backend_consistency import compare_order_sets
from shipledger.ops.backend_consistency import load_sqlite_orders

__all__ = [
    "compare_order_sets",
    "load_sqlite_orders",
]
