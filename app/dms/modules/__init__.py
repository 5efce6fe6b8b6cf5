"""
Feature modules live under this package.

Each module owns its models/service/admin routes and reuses platform primitives
(auth, RBAC + branch scoping, activity log, storage, DB session).
"""
