"""
notifications — Multi-channel notification dispatch with retry-and-fallback.

Sub-modules:
    backends/     — Per-provider delivery backends (email, SMS, push)
    chain         — Provider chain construction from settings
    orchestrator  — Ordered fallback delivery through a chain
    rendering     — Channel content rendering at intake
    service       — Intake: deliver now or queue for retry
    events        — Structured delivery events and sinks
    models        — Data structures shared across the system
"""
