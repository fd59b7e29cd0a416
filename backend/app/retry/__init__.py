"""
retry — Durable, age-banded redelivery of notifications whose whole
provider chain failed.

Sub-modules:
    store      — Redis-backed retry records, attempt counters and bands
    scheduler  — Background timers that redeliver and clean up
"""
