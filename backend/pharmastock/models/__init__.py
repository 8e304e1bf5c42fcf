from .catalog import Product
from .lots import Lot, LotMovement, LotStatus, MovementKind, MOVEMENT_SHAPES, lot_status
from .sync import OfflineSale

__all__ = [
    'Product',
    'Lot', 'LotMovement', 'LotStatus', 'MovementKind', 'MOVEMENT_SHAPES', 'lot_status',
    'OfflineSale',
]
