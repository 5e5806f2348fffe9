from crmseed.datasets.service import (
    DatasetBusyError,
    DatasetNotFoundError,
    DatasetService,
    DatasetStateError,
    dataset_to_dict,
    record_to_dict,
)
from crmseed.datasets.types import DatasetConfig, DatasetRecordSnapshot, DatasetSnapshot, NewRecord

__all__ = [
    "DatasetBusyError",
    "DatasetNotFoundError",
    "DatasetStateError",
    "DatasetService",
    "DatasetConfig",
    "DatasetSnapshot",
    "DatasetRecordSnapshot",
    "NewRecord",
    "dataset_to_dict",
    "record_to_dict",
]
