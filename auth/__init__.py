"""auth/ -- Authentication and authorization core for the Hive panel gateway.

Components, in dependency order:
  attempts.py     -- failed-login tracking and escalating lockouts
  sessions.py     -- session lifecycle validation (inactivity, restart)
  permissions.py  -- effective permission resolution
  cipher.py       -- authenticated field encryption

Layer rule: auth/ imports only stdlib + third-party libraries, plus core/ for
settings. It does NOT import from api/. api/ imports from auth/, not the other
way around.
"""
