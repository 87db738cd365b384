"""auth/ -- Credential checks, second factors and the token issuer for Avtopark.

Layer rule: auth/ imports stdlib, third-party libraries, core/ and cache/.
It does NOT import from api/, web/, or oidc/.
api/, web/ and oidc/ import from auth/, not the other way around.
"""
