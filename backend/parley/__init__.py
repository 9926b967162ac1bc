"""Parley real-time chat backend.

Modules:
    - directory: user identities and online presence
    - chat: rooms, participants, messages, pagination and live sessions
    - envelope: encrypted request/response envelope for the HTTP edge
    - auth: bearer token verification shared by HTTP and WebSocket
"""
