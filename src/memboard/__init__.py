"""memboard - tiered conversational memory and context assembly for LLM agents."""

from .config import MemoryConfig, load_config
from .service import MemoryService

__version__ = "0.1.0"

__all__ = [
    "MemoryConfig",
    "MemoryService",
    "load_config",
]
