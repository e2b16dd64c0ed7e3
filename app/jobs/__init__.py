"""
Job Tracking Package
═════════════════════

In-process state and orchestration for invoice processing jobs.

Modules
───────
  registry.py    job_id → latest ProgressSnapshot, terminal protection, eviction
  results.py     read-once result payloads with TTL
  publisher.py   one SSE subscription per job, frame encoding, keepalives
  tracker.py     registry update + publish under one lock
  runner.py      direct OpenAI pipeline as a detached asyncio task
  bridge.py      poll-to-push adapter for the externally hosted pipeline
  container.py   JobServices wiring and the FastAPI dependency provider
  ids.py         job identifier generation and routing
  exceptions.py  JobError taxonomy

Submodules are imported directly (app.jobs.registry, ...).
"""
