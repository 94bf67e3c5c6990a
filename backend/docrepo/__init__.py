"""docrepo: generic MongoDB repositories with composable predicates."""

__version__ = "0.1.0"

from .connection import (
    ClientRegistry,
    ConnectionMonitor,
    MongoClientHandle,
    MonitorState,
    configure_mongo,
    get_client_handle,
    get_registry,
    register_client,
)
from .exceptions import (
    DocRepoError,
    OperationCancelledError,
    QueryTranslationError,
    RepositoryConfigurationError,
)
from .models import MongoEntity, Page, SortSpec, asc, desc
from .predicate import Predicate, and_, new_query, or_
from .repository import EntityRepository
from .update import Update

__all__ = [
    "__version__",
    # Connection management
    "ClientRegistry",
    "ConnectionMonitor",
    "MongoClientHandle",
    "MonitorState",
    "configure_mongo",
    "get_client_handle",
    "get_registry",
    "register_client",
    # Errors
    "DocRepoError",
    "OperationCancelledError",
    "QueryTranslationError",
    "RepositoryConfigurationError",
    # Models
    "MongoEntity",
    "Page",
    "SortSpec",
    "asc",
    "desc",
    # Predicates
    "Predicate",
    "and_",
    "new_query",
    "or_",
    # Repository
    "EntityRepository",
    "Update",
]
