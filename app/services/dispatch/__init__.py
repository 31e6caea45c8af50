from app.services.dispatch.device_locks import DeviceLockRegistry
from app.services.dispatch.dispatcher import (
    CommandDispatcher,
    DispatchOutcome,
    DispatchRequest,
    DispatchSettings,
)
from app.services.dispatch.retry import RetryPolicy

__all__ = [
    "CommandDispatcher",
    "DeviceLockRegistry",
    "DispatchOutcome",
    "DispatchRequest",
    "DispatchSettings",
    "RetryPolicy",
]
