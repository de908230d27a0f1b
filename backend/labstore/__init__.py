from .database import SQLiteLabDB, StoreUnavailable
from .service import LabStorage

__all__ = [
    "LabStorage",
    "SQLiteLabDB",
    "StoreUnavailable",
]
