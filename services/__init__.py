# Services package
from .inventory import InventoryLedger, StockLine
from .wallet import WalletLedger
from .notify import OrderNotifier
from .orders import OrderService, OrderLine, ShippingInfo

__all__ = [
    "InventoryLedger",
    "StockLine",
    "WalletLedger",
    "OrderNotifier",
    "OrderService",
    "OrderLine",
    "ShippingInfo",
]
