from docflow.workers.manager import ProcessingQueueManager, create_queue_manager
from docflow.workers.policies import JobPolicy, build_policies
from docflow.workers.queue import InMemoryWorkQueue, WorkQueue, create_work_queue

__all__ = [
    "ProcessingQueueManager", "create_queue_manager",
    "JobPolicy", "build_policies",
    "WorkQueue", "InMemoryWorkQueue", "create_work_queue",
]
