"""
alerts — Boundary-crossing detection, panic alerts and caregiver SMS.

Sub-modules:
    channels/           — messaging gateways (simulated, HTTP)
    models              — Alert, delivery tracking
    notifications       — message text, phone validation, per-recipient fan-out
    geofence_evaluator  — location inserts → membership transitions → alerts
    panic_trigger       — synchronous emergency alert with rate limiting
    dispatcher          — alert inserts → guardian SMS
"""
