"""
Assessment analysis job pipeline.

This package provides the queue-driven analysis worker:
- Bounded-concurrency consumption from a durable queue
- Content-hash deduplication so duplicate work is never billed twice
- Heartbeats, dead-letter routing and compensation for failed jobs
- A reconciler that repairs job state after crashes or lost acknowledgments
"""
