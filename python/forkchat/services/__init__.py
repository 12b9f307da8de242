"""Business logic services.

Services are called by route handlers and background tasks. The
coordinator owns admission; the generation state machine, run by the
scheduler, owns everything after it.
"""
