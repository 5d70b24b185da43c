"""
Domain modules live under this package.

Each module owns its models and services and reuses the platform primitives
(audit, errors, refs, DB session).
"""
