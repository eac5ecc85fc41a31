from wavmedia.queue.job_queue import JobContext, JobOptions, JobQueue, JobRecord, QueueDefinition, QueueEvent

__all__ = ["JobContext", "JobOptions", "JobQueue", "JobRecord", "QueueDefinition", "QueueEvent"]
