from .position_store import RedisPositionStore

__all__ = [
    "RedisPositionStore",
]
