# src/assistant/__init__.py
from .cache import CachedResponse, ResponseCache, fingerprint
from .categories import CacheCategory, infer_category
from .client import RequestClient
from .config import AssistantRuntimeConfig, load_assistant_runtime_config
from .errors import (
    AIError,
    AIAuthError,
    AIRateLimitError,
    AIServerError,
    AITimeoutError,
    AINetworkError,
    AIValidationError,
    AIRequestError,
    InvalidModeError,
    InputRejectedError,
)
from .modes import ModeConfig, ModeId, ModeRegistry
from .orchestrator import ServiceOrchestrator
from .rate_limiter import RateLimiter
from .retry import RetryExecutor
from .types import AssistantReply, ResponseEnvelope, Usage
