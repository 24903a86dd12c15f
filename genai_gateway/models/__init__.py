from genai_gateway.models.call_log import CallLog
from genai_gateway.models.credential import ApiCredential

__all__ = [
    "ApiCredential",
    "CallLog",
]
