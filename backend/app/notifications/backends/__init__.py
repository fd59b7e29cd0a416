"""
backends — Per-provider delivery backends.

Each backend class exposes:
    await send(destination, content) → None   (raises BackendDeliveryError)

Backends are stateless apart from credentials and a shared HTTP client.
Fallback and retry logic live in the orchestrator and retry scheduler.
"""
