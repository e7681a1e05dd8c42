"""
Attachment Jobs Module

Background jobs for outbox processing and cleanup.
"""

from hybrid_attachments.jobs.outbox_batch import (
    OutboxJobScheduler,
    run_outbox_batch,
    get_outbox_scheduler,
    start_outbox_scheduler,
    stop_outbox_scheduler,
    trigger_outbox_processing,
)
from hybrid_attachments.jobs.cleanup_batch import (
    run_outbox_cleanup_job,
    setup_cleanup_scheduler,
    shutdown_cleanup_scheduler,
    get_cleanup_scheduler_status,
)

__all__ = [
    "OutboxJobScheduler",
    "run_outbox_batch",
    "get_outbox_scheduler",
    "start_outbox_scheduler",
    "stop_outbox_scheduler",
    "trigger_outbox_processing",
    "run_outbox_cleanup_job",
    "setup_cleanup_scheduler",
    "shutdown_cleanup_scheduler",
    "get_cleanup_scheduler_status",
]
