"""
Fulfillment Services Module
"""
from .currency import RateTable, convert, quantize
from .inventory import InventoryLedger
from .orders import OrderAssembler, OrderLine
from .ratings import RatingAggregator, ReviewService
from .rates import ExchangeRateProvider
from .settlement import SettlementRecorder
from .status import OrderStatusMachine

__all__ = [
    "RateTable",
    "convert",
    "quantize",
    "InventoryLedger",
    "OrderAssembler",
    "OrderLine",
    "RatingAggregator",
    "ReviewService",
    "ExchangeRateProvider",
    "SettlementRecorder",
    "OrderStatusMachine",
]
