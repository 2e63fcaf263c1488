"""Play-session domain services: eligibility, sessions, scoring intake,
tier resolution and discount issuance.

Routes and socket handlers import from here; nothing in this package
touches the request object, so every service runs the same against the
SQL store and the in-memory store used by the tests.
"""
