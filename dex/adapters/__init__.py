"""
DEX adapter modules for the supported AMM types.
"""

from .v2 import get_amount_out
from .v3 import encode_v3_path, sqrt_price_to_price, virtual_reserves
from .vault import pool_id_bytes, proportional_amount_out

__all__ = [
    "get_amount_out",
    "encode_v3_path",
    "sqrt_price_to_price",
    "virtual_reserves",
    "pool_id_bytes",
    "proportional_amount_out",
]
