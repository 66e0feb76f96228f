"""auth/ -- Credential store and authenticators for Validiant.

Layer rule: auth/ imports from core/, cache/, stdlib, and third-party
libraries. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
