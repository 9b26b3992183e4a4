"""auth/ -- Identity, role and session package for directory sync.

Layer rule: auth/ imports core/ and directory/ plus third-party libraries.
It does NOT import from api/. auth/login.py alone may import sync/.
api/ and main.py import from auth/, not the other way around.
"""
