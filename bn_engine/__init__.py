from . import ops  # This imports and registers the bn_engine:: custom operators
from .errors import PreconditionViolation
from .layout import Impl, IndexWidth, choose_impl, index_width
from .ops import (
    BatchNormFunction,
    batch_norm_backward,
    batch_norm_backward_elemt,
    batch_norm_backward_reduce,
    batch_norm_elemt,
    batch_norm_forward,
    batch_norm_gather_stats,
    batch_norm_gather_stats_with_counts,
    batch_norm_stats,
    batch_norm_update_stats,
    batchnorm,
)
from .sync import SyncBatchNormFunction, sync_batchnorm

__all__ = [
    "ops",
    "PreconditionViolation",
    "Impl",
    "IndexWidth",
    "choose_impl",
    "index_width",
    "BatchNormFunction",
    "SyncBatchNormFunction",
    "batch_norm_backward",
    "batch_norm_backward_elemt",
    "batch_norm_backward_reduce",
    "batch_norm_elemt",
    "batch_norm_forward",
    "batch_norm_gather_stats",
    "batch_norm_gather_stats_with_counts",
    "batch_norm_stats",
    "batch_norm_update_stats",
    "batchnorm",
    "sync_batchnorm",
]
