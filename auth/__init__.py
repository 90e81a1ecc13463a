"""auth/ -- Authentication and authorization package for AccessGate.

Layer rule: auth/ imports from core/, audit/ and stdlib + third-party
libraries. It does NOT import from api/. api/ imports from auth/, not the
other way around. auth/dependencies.py is the one module allowed to import
FastAPI, because it is the Authorization Gate.
"""
