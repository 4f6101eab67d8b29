"""Storage layer - Database schemas and repositories."""

from reward_distributor.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from reward_distributor.storage.models import (
    Base,
    ClaimModel,
    ClaimPreviewModel,
    CounterModel,
    EntitlementModel,
    PrepModel,
    SnapshotModel,
)
from reward_distributor.storage.repos import (
    ClaimDTO,
    ClaimPreviewDTO,
    ClaimPreviewRepository,
    ClaimRepository,
    CounterRepository,
    EntitlementDTO,
    EntitlementRepository,
    PrepDTO,
    PrepRepository,
    SnapshotDTO,
    SnapshotRepository,
)

__all__ = [
    "Base",
    "ClaimDTO",
    "ClaimModel",
    "ClaimPreviewDTO",
    "ClaimPreviewModel",
    "ClaimPreviewRepository",
    "ClaimRepository",
    "CounterModel",
    "CounterRepository",
    "DatabaseManager",
    "EntitlementDTO",
    "EntitlementModel",
    "EntitlementRepository",
    "PrepDTO",
    "PrepModel",
    "PrepRepository",
    "SnapshotDTO",
    "SnapshotModel",
    "SnapshotRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
