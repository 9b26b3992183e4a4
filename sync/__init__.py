"""sync/ -- Reconciliation of directory identities into the local identity store.

Layer rule: sync/ may import from core/, directory/ and auth/. It does NOT
import from api/.
"""
