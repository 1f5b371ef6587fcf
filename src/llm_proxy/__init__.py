from .client import LLMClient, generate_session_id
from .config import ProxyConfig
from .contracts import ChatRequest, ChatResult, Message, ProviderName, Role, SessionContext, Usage, UsageRecord
from .gate import StaticSubmissionGate, SubmissionGate
from .metering import InMemoryUsageSink, JsonlUsageSink, UsageMeter
from .pricing import DEFAULT_PRICING, PricingEntry, PricingTable
from .router import RetryPolicy, Router

__all__ = [
    "ChatRequest",
    "ChatResult",
    "DEFAULT_PRICING",
    "InMemoryUsageSink",
    "JsonlUsageSink",
    "LLMClient",
    "Message",
    "PricingEntry",
    "PricingTable",
    "ProviderName",
    "ProxyConfig",
    "RetryPolicy",
    "Role",
    "Router",
    "SessionContext",
    "StaticSubmissionGate",
    "SubmissionGate",
    "Usage",
    "UsageMeter",
    "UsageRecord",
    "generate_session_id",
]
