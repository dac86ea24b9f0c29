"""Identity resolution for ContactSense.

Submodules:
- store: ContactStore protocol and its SQLAlchemy implementation
- resolver: Cluster resolution algorithm (match, root walk, elect, merge, extend)
- coordinator: Transactional wrapper with retry on lock conflicts
- formatter: Cluster to response reduction
"""

from contact_sense.resolution.coordinator import TransactionCoordinator
from contact_sense.resolution.formatter import format_response
from contact_sense.resolution.resolver import ClusterResolution, ClusterResolver, find_cluster_root
from contact_sense.resolution.store import (
    ContactStore,
    SqlAlchemyContactStore,
    SqlAlchemyUnitOfWork,
    UnitOfWork,
)

__all__ = [
    "ClusterResolution",
    "ClusterResolver",
    "ContactStore",
    "SqlAlchemyContactStore",
    "SqlAlchemyUnitOfWork",
    "TransactionCoordinator",
    "UnitOfWork",
    "find_cluster_root",
    "format_response",
]
