"""
Durable background jobs.

This package provides:
- A record store of jobs with atomic batch claims and worker leases
- A batch loader feeding a fast priority dispatch queue
- A worker pool running registry-based handlers with bounded concurrency
- A failure policy that retries with backoff or escalates to dead letters
"""
