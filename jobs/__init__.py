"""Background jobs."""

from jobs.scheduler import JobScheduler

__all__ = ["JobScheduler"]
