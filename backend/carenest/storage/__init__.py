"""
storage — Durable state consumed by the safety core.

Sub-modules:
    models         — Subject, LocationPoint, Geofence, MembershipState
    entity_store   — store contract, keys, indexes, in-memory backend
    sql_store      — SQLAlchemy backend
    membership     — versioned boundary-status reads and writes
    change_stream  — at-least-once insert event delivery
"""
