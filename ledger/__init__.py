"""ledger/ -- Append-only audit ledger of credential events.

Layer rule: ledger/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/, web/, auth/, or security/.
Subjects are duck-typed (principal_type, id, email), so auth/ stays optional.
"""
