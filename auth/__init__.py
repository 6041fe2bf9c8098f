"""auth/ -- Principals, principal-type registry, tokens, and auth dependencies.

Layer rule: auth/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/, web/, ledger/, or security/.
api/, web/ and security/ import from auth/, not the other way around.
"""
