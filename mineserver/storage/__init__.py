from ._schema import SCHEMA_VERSION, SCHEMA_SQL
from .users import UserRepo, USER_COLUMNS, UPGRADE_COLUMNS
from .rate_limits import RateLimitRepo
from .activity import ActivityRepo
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "UserRepo",
    "USER_COLUMNS",
    "UPGRADE_COLUMNS",
    "RateLimitRepo",
    "ActivityRepo",
    "StorageManager",
]
