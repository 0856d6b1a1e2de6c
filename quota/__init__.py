"""quota/ -- Plan registry and windowed usage counters.

Layer rule: quota/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or auth/ -- except quota/dependencies.py, which
is part of the FastAPI dependency injection system and reads the Principal
produced by auth/.
"""
