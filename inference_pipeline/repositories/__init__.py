from inference_pipeline.repositories.dlq_items import InMemoryDlqItemsRepository, SqliteDlqItemsRepository
from inference_pipeline.repositories.jobs import InMemoryJobsRepository, SqliteJobsRepository

__all__ = [
    "InMemoryDlqItemsRepository",
    "SqliteDlqItemsRepository",
    "InMemoryJobsRepository",
    "SqliteJobsRepository",
]
