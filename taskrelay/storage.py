"""Store container built once at process start and passed to the orchestrator."""

import time
from dataclasses import dataclass
from typing import Callable

from . import config
from .cache_store import CacheStore
from .pipeline_store import PipelineStore
from .queue_store import QueueStore
from .tracking_store import PRTrackingStore, ProcessedCommentsStore, ReviewTrackingStore


@dataclass
class Stores:
    pipeline: PipelineStore
    queue: QueueStore
    cache: CacheStore
    pr_tracking: PRTrackingStore
    review_tracking: ReviewTrackingStore
    processed_comments: ProcessedCommentsStore


def open_stores(clock: Callable[[], float] = time.time) -> Stores:
    """Open every store under the current state directory."""
    return Stores(
        pipeline=PipelineStore(config.get_pipeline_path(), clock=clock),
        queue=QueueStore(config.get_queue_path(), clock=clock),
        cache=CacheStore(config.get_cache_path(), clock=clock),
        pr_tracking=PRTrackingStore(config.get_pr_tracking_path(), clock=clock),
        review_tracking=ReviewTrackingStore(config.get_review_tracking_path(), clock=clock),
        processed_comments=ProcessedCommentsStore(config.get_processed_comments_path()),
    )
