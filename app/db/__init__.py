from .base import Base
from .session import engine

# Export for convenience
__all__ = ["Base", "engine"]
