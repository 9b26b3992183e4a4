"""directory/ -- Directory protocol side of dirsync.

Connectivity probing, endpoint discovery, administrative and user-level
binds, and attribute search/normalization against the external directory.

Layer rule: directory/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, auth/ or sync/.
"""
