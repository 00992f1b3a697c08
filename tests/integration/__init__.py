"""
Integration tests against a live Redis.

They exercise the Lua scripts and the shared-store behaviour that the
unit tests mock out, and are skipped when no Redis is reachable at
REDIS_HOST:REDIS_PORT.
"""
