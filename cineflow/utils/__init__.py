from .fal_client import FalClient, FalImageClient, FalTextClient, FalVideoClient
from .gemini_client import GeminiImageClient, GeminiTextClient, GeminiVideoClient

__all__ = [
    "FalClient", "FalImageClient", "FalTextClient", "FalVideoClient",
    "GeminiImageClient", "GeminiTextClient", "GeminiVideoClient",
]
