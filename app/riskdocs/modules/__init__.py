"""
Feature modules live under this package.

Keep module boundaries clean: each module owns its models, service layer and
blueprint, and reuses platform primitives (auth, RBAC, audit, storage, DB session).
Anything that moves a document chain goes through ``documents.locking``.
"""
