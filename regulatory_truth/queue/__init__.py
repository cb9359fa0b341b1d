from .dispatcher import FileJobQueue, InMemoryJobQueue, Job, JobDispatcher, idempotency_key
