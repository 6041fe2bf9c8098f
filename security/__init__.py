"""security/ -- Credential expiry policy, enforcement gate, and bulk administration.

Layer rule: security/ imports from core/, auth/ and ledger/.
It does NOT import from api/ or web/; the HTTP adapters live there.
"""
