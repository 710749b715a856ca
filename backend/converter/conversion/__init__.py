from .errors import ConflictError, ConversionError, DispatchError, NotFoundError, NotSupportedError, ValidationError
from .models import ConversionOptions, ConversionTask, TaskState
from .service import ConversionService, CreateTaskRequest, get_conversion_service

__all__ = [
    "ConflictError",
    "ConversionError",
    "ConversionOptions",
    "ConversionService",
    "ConversionTask",
    "CreateTaskRequest",
    "DispatchError",
    "NotFoundError",
    "NotSupportedError",
    "TaskState",
    "ValidationError",
    "get_conversion_service",
]
