"""Fault-tolerant multi-source collection pipeline.

Building blocks, leaves first:

- ``errors``          error taxonomy and soft-skip reasons
- ``retry_handler``   error-classified exponential backoff with jitter
- ``circuit_breaker`` per-source closed / open / half-open state machine
- ``stores``          freshness oracle and run/job-run persistence
- ``jobs``            job contract and the scrape→validate→transform→save driver
- ``runner``          priority / dependency / circuit aware orchestrator

Team-name reconciliation lives in ``backend.services.entity_resolver``; it is
consumed by individual source jobs, never by the runner itself.
"""
