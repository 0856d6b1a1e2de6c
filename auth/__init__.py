"""auth/ -- Credential handling, principal resolution, and authorization.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or quota/.
api/ and quota/dependencies.py import from auth/, not the other way around.
"""
