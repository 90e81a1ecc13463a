"""audit/ -- Append-only audit trail for AccessGate.

Layer rule: audit/ imports from core/ and from the stdlib + third-party
libraries. It does NOT import from auth/ or api/. auth/ and api/ import from
audit/, not the other way around.
"""
