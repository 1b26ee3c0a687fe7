from portal.repositories.assets import InMemoryAssetsRepository, PostgresAssetsRepository
from portal.repositories.customers import InMemoryCustomersRepository, PostgresCustomersRepository
from portal.repositories.messages import InMemoryMessagesRepository, PostgresMessagesRepository
from portal.repositories.requests import InMemoryRequestsRepository, PostgresRequestsRepository

__all__ = [
    "InMemoryAssetsRepository",
    "PostgresAssetsRepository",
    "InMemoryCustomersRepository",
    "PostgresCustomersRepository",
    "InMemoryMessagesRepository",
    "PostgresMessagesRepository",
    "InMemoryRequestsRepository",
    "PostgresRequestsRepository",
]
