"""
Job Queue — multi-queue dispatch and execution for expensive background work.

- Registry holds one immutable policy per queue (concurrency, timeout, retry, retention)
- Dispatcher validates payloads and enqueues with priority / delay / dedup id
- WorkerPool runs handlers per queue under a concurrency limit with retry/backoff
- Supports Redis (production) and in-memory (dev) brokers
"""
