"""auth/ -- Credential and session authority for SessionGuard.

Modules, leaf-first: fingerprint, passwords, store, devices, reset, audit,
service. dependencies.py is the FastAPI glue.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or mailer/.
api/ and mailer/ import from auth/, not the other way around.
"""
