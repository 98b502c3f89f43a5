from __future__ import annotations

from typing import Protocol, Sequence

from fitstack.logging import get_logger
from fitstack.storage.models import DOMAIN_TABLES

logger = get_logger(__name__)


class DomainRowsBackend(Protocol):
    def delete_domain_rows(self, table: str, user_id: int) -> int: ...


class AccountDeletionScope(DomainRowsBackend, Protocol):
    """Store operations that run inside one account-deletion unit."""

    def delete_refresh_tokens(self, user_id: int) -> int: ...

    def delete_user(self, user_id: int) -> bool: ...


class DomainRepository(Protocol):
    name: str

    def delete_by_user_id(self, user_id: int) -> int: ...

    def bind(self, backend: DomainRowsBackend) -> "DomainRepository": ...


class TableRepository:
    """Per-user rows of one domain table owned by another service."""

    def __init__(self, backend: DomainRowsBackend, table: str) -> None:
        self.backend = backend
        self.name = table

    def delete_by_user_id(self, user_id: int) -> int:
        return self.backend.delete_domain_rows(self.name, user_id)

    def bind(self, backend: DomainRowsBackend) -> "TableRepository":
        return TableRepository(backend, self.name)


def default_repositories(backend: DomainRowsBackend) -> list[TableRepository]:
    return [TableRepository(backend, table) for table in DOMAIN_TABLES]


class UserDataDeletionService:
    """Deletes a user's domain data, children before parents."""

    def __init__(self, repositories: Sequence[DomainRepository]) -> None:
        self.repositories = list(repositories)

    def within(self, backend: DomainRowsBackend) -> "UserDataDeletionService":
        """The same repositories, rebound to ``backend`` (e.g. an open transaction)."""
        return UserDataDeletionService([repo.bind(backend) for repo in self.repositories])

    def delete_all_user_data(self, user_id: int) -> dict[str, int]:
        logger.info("user_data_deletion_started", user_id=user_id)
        deleted: dict[str, int] = {}
        for repository in self.repositories:
            deleted[repository.name] = repository.delete_by_user_id(user_id)
            logger.debug(
                "user_data_deleted", user_id=user_id, table=repository.name, rows=deleted[repository.name]
            )
        logger.info("user_data_deletion_finished", user_id=user_id, rows=sum(deleted.values()))
        return deleted
