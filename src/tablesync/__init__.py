from .cache import REMOVED, OptimisticCache, Snapshot, TabListCache
from .config import ConfigError, EngineConfig, GatewayConfig, load_engine_config, load_gateway_config
from .engine import TableSyncEngine
from .error_mapper import map_error
from .error_state import ErrorState
from .exceptions import (
    ApiError,
    ConflictError,
    ConsistencyWarning,
    NotFoundError,
    RateLimitError,
    RemoteFailure,
    RemoteRejectedError,
    ServerError,
    TransportError,
    ValidationError,
)
from .gateway import HttpPersistenceGateway, PersistenceGateway
from .locks import KeyedLocks
from .models import (
    CustomerTab,
    LinkedTableGroup,
    OrderItem,
    TableOrder,
    TableWithTabs,
)
from .notifications import LoggingNotifier, Notifier, UserFacingError, to_user_facing_error
from .results import MutationResult
from .retry import RetryPolicy, retry_operation
from .sync import SyncLoop
from .telemetry import TelemetryEvent, TelemetryLogger, build_event

__all__ = [
    "REMOVED",
    "ApiError",
    "ConfigError",
    "ConflictError",
    "ConsistencyWarning",
    "CustomerTab",
    "EngineConfig",
    "ErrorState",
    "GatewayConfig",
    "HttpPersistenceGateway",
    "KeyedLocks",
    "LinkedTableGroup",
    "LoggingNotifier",
    "MutationResult",
    "NotFoundError",
    "Notifier",
    "OptimisticCache",
    "OrderItem",
    "PersistenceGateway",
    "RateLimitError",
    "RemoteFailure",
    "RemoteRejectedError",
    "RetryPolicy",
    "ServerError",
    "Snapshot",
    "SyncLoop",
    "TabListCache",
    "TableOrder",
    "TableSyncEngine",
    "TableWithTabs",
    "TelemetryEvent",
    "TelemetryLogger",
    "TransportError",
    "UserFacingError",
    "ValidationError",
    "build_event",
    "load_engine_config",
    "load_gateway_config",
    "map_error",
    "retry_operation",
    "to_user_facing_error",
]
