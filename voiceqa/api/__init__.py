"""
HTTP and websocket boundary for the voiceqa service.

Design intent:
- Expose thin endpoints for recording, processing, retry, and cancellation.
- Translate pipeline errors into status codes; keep processing logic in internal_core.
"""
