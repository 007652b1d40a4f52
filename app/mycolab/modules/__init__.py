"""
Feature modules live under this package.

Each module owns its models, services and blueprint, and reuses the platform
primitives (auth, RBAC, audit, DB session) from app.mycolab.
"""
