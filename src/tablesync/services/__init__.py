from .base import EngineState, ServiceBase
from .customer_tabs import CustomerTabService
from .table_orders import TableOrderService

__all__ = ["CustomerTabService", "EngineState", "ServiceBase", "TableOrderService"]
