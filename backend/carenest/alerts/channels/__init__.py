"""
channels — Messaging backends.

Each gateway exposes:
    send(phone, text) → None, raising DependencyError on failure

Gateways are stateless apart from connection reuse. Retries, if any,
belong to the provider behind the gateway, not to the caller.
"""
