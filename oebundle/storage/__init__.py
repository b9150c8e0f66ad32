from .journal import RedisBundleJournal
from .settings import StorageSettings

__all__ = [
    "RedisBundleJournal",
    "StorageSettings",
]
