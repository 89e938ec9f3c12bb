"""auth/ -- Authentication and session-lifecycle core for the marketplace.

Layer rule: auth/ imports only stdlib + third-party libraries (and core/ for
type hints of Settings). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
