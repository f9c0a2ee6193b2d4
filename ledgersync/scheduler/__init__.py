"""Background scheduler."""

from ledgersync.scheduler.jobs import scheduler, setup_scheduler

__all__ = ["scheduler", "setup_scheduler"]
