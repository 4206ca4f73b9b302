"""
voiceqa service package.

Design intent:
- Turn a spoken question into a written answer behind a small HTTP and websocket surface.
- Keep the processing core (internal_core) independent from the transport (api).
"""
