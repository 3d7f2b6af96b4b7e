"""RQ worker, scheduler and pipeline stages."""
